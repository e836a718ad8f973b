"""
Proration calculations for mid-period plan and quantity changes.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from ledgerline.billing.core.enums import ProrationBehavior
from ledgerline.billing.core.models import InvoiceLine
from ledgerline.billing.exceptions import ValidationError
from ledgerline.billing.money_utils import money_handler
from ledgerline.billing.periods import remaining_fraction


class ProrationResult(BaseModel):
    """Outcome of a proration calculation. All amounts in minor units."""

    model_config = ConfigDict(frozen=True)

    behavior: ProrationBehavior
    currency: str
    remaining_fraction: Decimal = Decimal(0)
    credit_amount: int = Field(0, ge=0, description="Unused time on the old price")
    charge_amount: int = Field(0, ge=0, description="Remaining time on the new price")
    net_amount: int = Field(0, description="charge - credit; negative is a customer credit")
    lines: list[InvoiceLine] = Field(default_factory=list)

    @property
    def should_invoice(self) -> bool:
        if self.behavior == ProrationBehavior.NONE:
            return False
        if self.behavior == ProrationBehavior.ALWAYS_INVOICE:
            return True
        return self.net_amount != 0


def calculate_proration(
    *,
    old_amount: int,
    new_amount: int,
    period_start: datetime,
    period_end: datetime,
    change_at: datetime,
    behavior: ProrationBehavior = ProrationBehavior.CREATE_PRORATIONS,
    currency: str = "USD",
    old_description: str = "Unused time",
    new_description: str = "Remaining time",
) -> ProrationResult:
    """Prorate a price change at ``change_at``.

    ``old_amount`` and ``new_amount`` are full-period prices already
    multiplied by quantity. Credit and charge are each rounded half-up to
    a minor unit.
    """
    behavior = ProrationBehavior(behavior)
    if behavior == ProrationBehavior.NONE:
        return ProrationResult(behavior=behavior, currency=currency)

    if old_amount < 0 or new_amount < 0:
        raise ValidationError(
            "Prices must not be negative",
            context={"old_amount": old_amount, "new_amount": new_amount},
        )

    fraction = remaining_fraction(period_start, period_end, change_at)
    credit = money_handler.scale_minor_units(old_amount, fraction, currency)
    charge = money_handler.scale_minor_units(new_amount, fraction, currency)

    lines: list[InvoiceLine] = []
    if credit:
        lines.append(
            InvoiceLine(
                description=old_description,
                amount=-credit,
                proration=True,
                period_start=change_at,
                period_end=period_end,
            )
        )
    if charge:
        lines.append(
            InvoiceLine(
                description=new_description,
                amount=charge,
                proration=True,
                period_start=change_at,
                period_end=period_end,
            )
        )

    return ProrationResult(
        behavior=behavior,
        currency=currency,
        remaining_fraction=fraction,
        credit_amount=credit,
        charge_amount=charge,
        net_amount=charge - credit,
        lines=lines,
    )


__all__ = ["ProrationResult", "calculate_proration"]
