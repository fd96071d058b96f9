import pytest

from core.errors import InvalidSettingsValue
from models.settings import Setting
from utils.settings_store import load_settings, save_settings


def test_defaults_when_nothing_stored(db):
    settings = load_settings(db)
    assert settings.commission_hold_days == 30
    assert settings.minimum_payout == 50
    assert settings.payout_schedule == "monthly-1st"
    assert settings.qualification_threshold == 17
    assert settings.new_deal_amount_potential == 5000
    assert settings.terminal_outcomes == ["converted", "not_interested", "wrong_number"]
    assert settings.success_outcome == "converted"


def test_partial_update_persists(db):
    save_settings(db, {"commissionHoldDays": 14, "payout_schedule": "weekly"})
    settings = load_settings(db)
    assert settings.commission_hold_days == 14
    assert settings.payout_schedule == "weekly"
    assert settings.minimum_payout == 50
    assert db.query(Setting).count() == 2


@pytest.mark.parametrize("updates", [
    {"commission_hold_days": 366},
    {"commission_hold_days": -1},
    {"minimum_payout": 10001},
    {"payout_schedule": "daily"},
    {"qualification_threshold": 0},
    {"new_deal_amount_potential": 2000000},
    {"terminal_outcomes": ["converted", "ghosted"]},
])
def test_invalid_values_rejected(db, updates):
    with pytest.raises(InvalidSettingsValue):
        save_settings(db, updates)
    assert db.query(Setting).count() == 0


def test_invalid_update_writes_nothing(db):
    with pytest.raises(InvalidSettingsValue):
        save_settings(db, {"commission_hold_days": 10, "minimum_payout": -5})
    assert load_settings(db).commission_hold_days == 30


def test_success_outcome_not_editable(db):
    with pytest.raises(InvalidSettingsValue):
        save_settings(db, {"successOutcome": "needs_follow_up"})


def test_unknown_key_rejected(db):
    with pytest.raises(InvalidSettingsValue):
        save_settings(db, {"colour": "blue"})


def test_unparsable_row_falls_back_to_default(db):
    db.add(Setting(key="commission_hold_days", value="not-a-number"))
    db.add(Setting(key="minimum_payout", value="75"))
    db.commit()
    settings = load_settings(db)
    assert settings.commission_hold_days == 30
    assert settings.minimum_payout == 75


def test_error_message_is_descriptive(db):
    with pytest.raises(InvalidSettingsValue) as exc:
        save_settings(db, {"payoutSchedule": "daily"})
    assert "payout_schedule" in str(exc.value)
    assert "weekly" in str(exc.value)
