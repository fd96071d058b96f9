"""
Pipeline amounts for the CRM view

An appointment still in the pipeline is worth its sale value, or
new_deal_amount_potential when no sale value is known yet. A closed appointment
(terminal outcome) is worth its sale value only.
"""
from decimal import Decimal
from typing import Dict, Iterable

from models.appointments import Appointment, CallOutcome
from utils.settings_store import AffiliateSettings


def pipeline_amounts(appointments: Iterable[Appointment], settings: AffiliateSettings) -> Dict[str, float]:
    potential = Decimal(str(settings.new_deal_amount_potential))
    terminal = set(settings.terminal_outcomes)
    open_amount = Decimal("0")
    new_amount = Decimal("0")
    closed_amount = Decimal("0")
    open_deals = 0
    closed_deals = 0

    for appt in appointments:
        sale = Decimal(str(appt.sale_value)) if appt.sale_value is not None else Decimal("0")
        outcome = appt.outcome or CallOutcome.PENDING.value
        if outcome == CallOutcome.PENDING.value:
            new_amount += potential
        if outcome in terminal:
            closed_deals += 1
            if sale > 0:
                closed_amount += sale
        else:
            open_deals += 1
            open_amount += sale if sale > 0 else potential

    return {
        "openDealAmount": float(open_amount),
        "newDealAmount": float(new_amount),
        "closedDealAmount": float(closed_amount),
        "totalRevenue": float(open_amount + closed_amount),
        "openDeals": open_deals,
        "closedDeals": closed_deals,
    }
