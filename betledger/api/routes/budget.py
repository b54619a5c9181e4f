"""Budget API endpoints."""

from decimal import Decimal

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from betledger.api.dependencies import get_owner_id, get_redis
from betledger.config import get_reconciliation_config
from betledger.services.budget import BudgetStore

router = APIRouter(prefix="/api/budget", tags=["budget"])


class BudgetResponse(BaseModel):
    initial_budget: float


class BudgetUpdate(BaseModel):
    initial_budget: Decimal = Field(ge=0)


def _store(redis_client: redis.Redis, owner_id: str) -> BudgetStore:
    default = Decimal(str(get_reconciliation_config().default_budget))
    return BudgetStore(redis_client, owner_id, default)


@router.get("", response_model=BudgetResponse)
async def get_budget(
    owner_id: str = Depends(get_owner_id),
    redis_client: redis.Redis = Depends(get_redis),
):
    """Get the caller's initial virtual budget."""
    return BudgetResponse(initial_budget=await _store(redis_client, owner_id).get())


@router.put("", response_model=BudgetResponse)
async def set_budget(
    update: BudgetUpdate,
    owner_id: str = Depends(get_owner_id),
    redis_client: redis.Redis = Depends(get_redis),
):
    """Set the caller's initial virtual budget."""
    amount = await _store(redis_client, owner_id).set(update.initial_budget)
    return BudgetResponse(initial_budget=amount)
