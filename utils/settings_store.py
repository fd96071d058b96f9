"""
Affiliate program settings
Stored as key/value rows (JSON-encoded values) and read through AffiliateSettings.
Settings are loaded on every call that needs them; nothing is cached in-process.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import DataStoreUnavailable, InvalidSettingsValue
from models.appointments import CallOutcome, OUTCOME_VALUES
from models.settings import Setting
from utils.windows import utcnow

PAYOUT_SCHEDULES = ["weekly", "biweekly", "monthly-1st", "monthly-15th", "monthly-last", "quarterly"]

# success_outcome is fixed; admins cannot change what counts as a sale
EDITABLE_KEYS = (
    "commission_hold_days",
    "minimum_payout",
    "payout_schedule",
    "qualification_threshold",
    "new_deal_amount_potential",
    "terminal_outcomes",
)

# camelCase names accepted from the admin UI
_ALIASES = {
    "commissionHoldDays": "commission_hold_days",
    "minimumPayout": "minimum_payout",
    "payoutSchedule": "payout_schedule",
    "qualificationThreshold": "qualification_threshold",
    "newDealAmountPotential": "new_deal_amount_potential",
    "terminalOutcomes": "terminal_outcomes",
}


class AffiliateSettings(BaseModel):
    commission_hold_days: int = Field(30, ge=0, le=365)
    minimum_payout: float = Field(50.0, ge=0, le=10000)
    payout_schedule: str = "monthly-1st"
    qualification_threshold: int = Field(17, ge=1, le=100)
    new_deal_amount_potential: float = Field(5000.0, ge=0, le=1000000)
    terminal_outcomes: List[str] = Field(
        default_factory=lambda: [
            CallOutcome.CONVERTED.value,
            CallOutcome.NOT_INTERESTED.value,
            CallOutcome.WRONG_NUMBER.value,
        ]
    )
    success_outcome: str = CallOutcome.CONVERTED.value

    @field_validator("payout_schedule")
    @classmethod
    def _check_schedule(cls, v: str) -> str:
        if v not in PAYOUT_SCHEDULES:
            raise ValueError(f"Payout schedule must be one of: {', '.join(PAYOUT_SCHEDULES)}")
        return v

    @field_validator("terminal_outcomes")
    @classmethod
    def _check_outcomes(cls, v: List[str]) -> List[str]:
        invalid = [o for o in v if o not in OUTCOME_VALUES]
        if invalid:
            raise ValueError(f"Invalid outcomes: {', '.join(invalid)}")
        # Keep order, drop duplicates
        return list(dict.fromkeys(v))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commissionHoldDays": self.commission_hold_days,
            "minimumPayout": self.minimum_payout,
            "payoutSchedule": self.payout_schedule,
            "qualificationThreshold": self.qualification_threshold,
            "newDealAmountPotential": self.new_deal_amount_potential,
            "terminalOutcomes": list(self.terminal_outcomes),
            "successOutcome": self.success_outcome,
        }


def _decode(raw: Optional[str]):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def load_settings(db: Session) -> AffiliateSettings:
    """Current settings; missing or unparsable rows fall back to defaults."""
    defaults = AffiliateSettings()
    rows = db.query(Setting).filter(Setting.key.in_(EDITABLE_KEYS)).all()
    values: Dict[str, Any] = {}
    for row in rows:
        value = _decode(row.value)
        try:
            # Validate each stored value on its own so one bad row does not discard the rest
            AffiliateSettings(**{row.key: value})
            values[row.key] = value
        except ValidationError:
            logger.warning(f"[settings.load] ignoring invalid stored value key={row.key} value={row.value!r}")
    if not values:
        return defaults
    return AffiliateSettings(**values)


def _normalize_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in (updates or {}).items():
        key = _ALIASES.get(k, k)
        if key == "success_outcome" or k == "successOutcome":
            raise InvalidSettingsValue("successOutcome cannot be changed")
        if key not in EDITABLE_KEYS:
            raise InvalidSettingsValue(f"Unknown setting: {k}")
        out[key] = v
    return out


def _describe(ex: ValidationError) -> str:
    parts = []
    for err in ex.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def save_settings(db: Session, updates: Dict[str, Any], now: Optional[datetime] = None) -> AffiliateSettings:
    """
    Validate a partial update against the merged settings and persist it.
    Either every key is written in one transaction or nothing is.
    """
    changes = _normalize_updates(updates)
    current = load_settings(db)
    merged = current.model_dump()
    merged.update(changes)
    try:
        validated = AffiliateSettings(**merged)
    except ValidationError as ex:
        raise InvalidSettingsValue(_describe(ex)) from ex

    now = now or utcnow()
    try:
        for key in changes:
            value = json.dumps(getattr(validated, key))
            row = db.query(Setting).filter(Setting.key == key).first()
            if row:
                row.value = value
                row.updated_at = now
            else:
                db.add(Setting(key=key, value=value, updated_at=now))
        db.commit()
    except DBAPIError as ex:
        db.rollback()
        logger.error(f"[settings.save] failed: {ex}")
        raise DataStoreUnavailable(str(ex)) from ex
    logger.info(f"[settings.save] updated keys={sorted(changes)}")
    return validated
