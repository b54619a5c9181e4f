"""Per-owner virtual budget persisted in Redis."""

from decimal import Decimal, InvalidOperation

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class BudgetStore:
    """Initial budget of one owner; falls back to the configured default."""

    KEY_TEMPLATE = "betledger:budget:{owner_id}"

    def __init__(self, redis_client: redis.Redis, owner_id: str, default: Decimal):
        self.redis = redis_client
        self.owner_id = owner_id
        self.default = default

    @property
    def key(self) -> str:
        return self.KEY_TEMPLATE.format(owner_id=self.owner_id)

    async def get(self) -> Decimal:
        raw = await self.redis.get(self.key)
        if raw is None:
            return self.default
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            return Decimal(raw)
        except InvalidOperation:
            logger.warning("budget_value_unreadable", owner_id=self.owner_id, value=raw)
            return self.default

    async def set(self, amount: Decimal) -> Decimal:
        """Persist a new initial budget. Must not be negative."""
        amount = Decimal(str(amount))
        if amount < 0:
            raise ValueError("Budget cannot be negative")
        await self.redis.set(self.key, str(amount))
        logger.info("budget_updated", owner_id=self.owner_id, amount=str(amount))
        return amount
