"""Active pricing configuration lookup."""
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parking_core.database.models import IncrementRate, PricingConfig
from parking_core.domain.errors import BusinessLogicError, ErrorCode
from parking_core.domain.money import MoneyInput
from parking_core.domain.pricing import PricingPolicy


def to_policy(config: PricingConfig) -> PricingPolicy:
    return PricingPolicy(
        minimum_hours=config.minimum_hours,
        minimum_rate=config.minimum_rate,
        increment_minutes=config.increment_minutes,
        increment_rate=config.increment_rate,
        increment_rates=tuple(tier.rate for tier in config.increment_rates),
        daily_special_hours=config.daily_special_hours,
        daily_special_rate=config.daily_special_rate,
        monthly_rate=config.monthly_rate,
        lost_ticket_fee=config.lost_ticket_fee,
    )


async def get_active_policy(session: AsyncSession) -> PricingPolicy:
    """
    Load the pricing policy in force.

    When several rows are flagged active the most recently created wins.

    Raises:
        BusinessLogicError: PRICING_NOT_CONFIGURED
    """
    stmt = (
        select(PricingConfig)
        .where(PricingConfig.is_active.is_(True))
        .order_by(PricingConfig.created_at.desc(), PricingConfig.id.desc())
        .limit(1)
    )
    config = (await session.execute(stmt)).scalar_one_or_none()
    if config is None:
        raise BusinessLogicError(
            ErrorCode.PRICING_NOT_CONFIGURED,
            "No active pricing configuration",
        )
    return to_policy(config)


async def save_policy(
    session: AsyncSession,
    policy: PricingPolicy,
    *,
    deactivate_others: bool = True,
    created_at: datetime | None = None,
) -> PricingConfig:
    """Store policy as the active configuration."""
    if deactivate_others:
        result = await session.execute(
            select(PricingConfig).where(PricingConfig.is_active.is_(True))
        )
        for existing in result.scalars():
            existing.is_active = False

    config = PricingConfig(
        minimum_hours=policy.minimum_hours,
        minimum_rate=policy.minimum_rate,
        increment_minutes=policy.increment_minutes,
        increment_rate=policy.increment_rate,
        daily_special_hours=policy.daily_special_hours,
        daily_special_rate=policy.daily_special_rate,
        monthly_rate=policy.monthly_rate,
        lost_ticket_fee=policy.lost_ticket_fee,
        is_active=True,
        increment_rates=_tiers(policy.increment_rates),
    )
    if created_at is not None:
        config.created_at = created_at
    session.add(config)
    await session.flush()
    return config


def _tiers(rates: Iterable[MoneyInput]) -> list:
    return [IncrementRate(tier_index=i, rate=rate) for i, rate in enumerate(rates)]


def build_policy(
    minimum_hours: int = 1,
    minimum_rate: MoneyInput = "25.00",
    increment_minutes: int = 15,
    increment_rate: MoneyInput = "8.50",
    monthly_rate: MoneyInput = "800.00",
    lost_ticket_fee: MoneyInput = "150.00",
    increment_rates: Iterable[MoneyInput] = (),
    daily_special_hours: Optional[int] = None,
    daily_special_rate: Optional[MoneyInput] = None,
) -> PricingPolicy:
    """Policy with the lot's default tariff, overridable per field."""
    return PricingPolicy(
        minimum_hours=minimum_hours,
        minimum_rate=minimum_rate,
        increment_minutes=increment_minutes,
        increment_rate=increment_rate,
        increment_rates=tuple(increment_rates),
        daily_special_hours=daily_special_hours,
        daily_special_rate=daily_special_rate,
        monthly_rate=monthly_rate,
        lost_ticket_fee=lost_ticket_fee,
    )
