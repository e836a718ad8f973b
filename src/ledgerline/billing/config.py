"""
Billing module configuration
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledgerline.billing.core.enums import ConflictPolicy, GraceExpiryAction


class DunningConfig(BaseModel):
    """Failed-payment retry configuration"""

    model_config = ConfigDict()

    retry_schedule_days: list[int] = Field(
        default=[1, 3, 5],
        description="Days to wait before each retry, measured from the previous failure",
    )
    grace_period_days: int = Field(14, description="Days a past-due subscription stays usable")
    grace_expiry_action: GraceExpiryAction = Field(
        GraceExpiryAction.UNPAID, description="Status once the grace period is over"
    )
    trial_ending_lookahead_days: int = Field(3, description="Trial-ending notice window")
    sweep_batch_size: int = Field(100, description="Max subscriptions handled per query per sweep")

    @field_validator("retry_schedule_days")
    @classmethod
    def _positive_days(cls, value: list[int]) -> list[int]:
        if any(day <= 0 for day in value):
            raise ValueError("retry_schedule_days entries must be positive")
        return value


class WebhookConfig(BaseModel):
    """Inbound webhook processing configuration"""

    model_config = ConfigDict()

    max_attempts: int = Field(5, ge=1, description="Processing attempts before dead-lettering")
    backoff_base_seconds: int = Field(60, ge=0, description="Delay before the first retry")
    backoff_max_seconds: int = Field(3600, ge=0, description="Upper bound for retry delay")
    processing_lease_seconds: int = Field(
        300, ge=1, description="A processing claim older than this may be taken over"
    )
    process_inline: bool = Field(False, description="Process events right after receipt")


class EntitlementConfig(BaseModel):
    """Entitlement merge configuration"""

    model_config = ConfigDict()

    set_conflict_policy: ConflictPolicy = Field(
        ConflictPolicy.MAX, description="How conflicting set grants are resolved"
    )


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict()

    livemode: bool = Field(False, description="Production (live) vs sandbox transactions")
    default_currency: str = Field("USD", min_length=3, max_length=3)

    dunning: DunningConfig = Field(default_factory=DunningConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    entitlements: EntitlementConfig = Field(default_factory=EntitlementConfig)

    @classmethod
    def from_env(cls) -> BillingConfig:
        """Create configuration from process settings"""
        from ledgerline.settings import get_settings

        billing = get_settings().billing

        return cls(
            livemode=billing.livemode,
            default_currency=billing.default_currency.upper(),
            dunning=DunningConfig(
                retry_schedule_days=billing.retry_schedule_days,
                grace_period_days=billing.grace_period_days,
                grace_expiry_action=GraceExpiryAction(billing.grace_expiry_action),
                trial_ending_lookahead_days=billing.trial_ending_lookahead_days,
            ),
            webhook=WebhookConfig(
                max_attempts=billing.webhook_max_attempts,
                backoff_base_seconds=billing.webhook_backoff_base_seconds,
            ),
            entitlements=EntitlementConfig(
                set_conflict_policy=ConflictPolicy(billing.entitlement_set_conflict_policy),
            ),
        )


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_env()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set (or with ``None``, reset) the global billing configuration instance"""
    global _billing_config
    _billing_config = config
