"""
Promo code checks and discount arithmetic.

A redeemed promo code stays on the subscription and reduces every
full-period price computed for it: renewal charges, renewal invoices and
both sides of a proration.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from ledgerline.billing.core.enums import DiscountType
from ledgerline.billing.core.models import Plan, PromoCode
from ledgerline.billing.exceptions import ValidationError
from ledgerline.billing.money_utils import money_handler


def _rejected(promo_code: PromoCode, message: str, reason: str) -> ValidationError:
    return ValidationError(
        message,
        field="promo_code_id",
        context={"promo_code_id": promo_code.id, "code": promo_code.code, "reason": reason},
    )


def ensure_redeemable(promo_code: PromoCode, plan: Plan, now: datetime) -> None:
    """Raise ``ValidationError`` unless ``promo_code`` may be redeemed on ``plan`` at ``now``."""
    if not promo_code.active:
        raise _rejected(promo_code, f"Promo code {promo_code.code} is not active", "inactive")
    if promo_code.valid_from is not None and now < promo_code.valid_from:
        raise _rejected(
            promo_code, f"Promo code {promo_code.code} is not yet valid", "not_yet_valid"
        )
    if promo_code.valid_until is not None and now > promo_code.valid_until:
        raise _rejected(promo_code, f"Promo code {promo_code.code} has expired", "expired")
    if promo_code.is_exhausted:
        raise _rejected(
            promo_code,
            f"Promo code {promo_code.code} has reached its maximum redemptions",
            "exhausted",
        )
    if not promo_code.applies_to(plan.id):
        raise _rejected(
            promo_code,
            f"Promo code {promo_code.code} is not valid for plan {plan.id}",
            "plan_not_applicable",
        )
    if (
        promo_code.discount_type == DiscountType.FIXED_AMOUNT
        and promo_code.currency is not None
        and promo_code.currency != plan.currency
    ):
        raise _rejected(
            promo_code,
            f"Promo code {promo_code.code} is only valid for {promo_code.currency}",
            "currency_mismatch",
        )


def discount_amount(promo_code: PromoCode | None, plan: Plan, amount: int) -> int:
    """Minor units taken off ``amount``, a full-period price on ``plan``.

    Never more than ``amount``. Zero when there is no code, the plan is
    outside the code's plans or a fixed amount is in another currency.
    """
    if promo_code is None or amount <= 0 or not promo_code.applies_to(plan.id):
        return 0
    if promo_code.discount_type == DiscountType.PERCENTAGE:
        factor = Decimal(promo_code.discount_value) / Decimal(100)
        return min(amount, money_handler.scale_minor_units(amount, factor, plan.currency))
    if promo_code.currency is not None and promo_code.currency != plan.currency:
        return 0
    return min(amount, promo_code.discount_value)


def discounted_amount(promo_code: PromoCode | None, plan: Plan, amount: int) -> int:
    return amount - discount_amount(promo_code, plan, amount)


__all__ = ["ensure_redeemable", "discount_amount", "discounted_amount"]
