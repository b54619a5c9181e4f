"""Strategy API endpoints."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.api.dependencies import get_db, get_owner_id
from betledger.services.strategies import (
    HydratedStrategy,
    StrategyNotFoundError,
    StrategyVersionStore,
)

router = APIRouter(prefix="/api/strategies", tags=["strategies"])


class StrategyVersionResponse(BaseModel):
    """Strategy version response."""

    id: str
    strategy_id: str
    version_number: int
    author: str
    changelog: str | None
    content: dict[str, Any]
    deployed: bool
    created_at: datetime | None

    class Config:
        from_attributes = True


class StrategyResponse(BaseModel):
    """Strategy container with its latest and deployed versions."""

    id: str
    name: str
    description: str | None
    pnl: float
    wins: int
    losses: int
    is_archived: bool
    is_promoted: bool
    deployed_version_id: str | None
    created_at: datetime | None
    latest_version: StrategyVersionResponse | None = None
    deployed_version: StrategyVersionResponse | None = None


class CreateStrategyRequest(BaseModel):
    name: str
    content: dict[str, Any]
    description: str | None = None
    changelog: str | None = None


class SaveVersionRequest(BaseModel):
    content: dict[str, Any]
    changelog: str | None = None


class DeployRequest(BaseModel):
    version_id: str


class UpdateStrategyRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    is_archived: bool | None = None
    is_promoted: bool | None = None


def _version(version) -> StrategyVersionResponse | None:
    if version is None:
        return None
    return StrategyVersionResponse.model_validate(version)


def _strategy_response(hydrated: HydratedStrategy) -> StrategyResponse:
    s = hydrated.strategy
    return StrategyResponse(
        id=s.id,
        name=s.name,
        description=s.description,
        pnl=s.pnl,
        wins=s.wins,
        losses=s.losses,
        is_archived=s.is_archived,
        is_promoted=s.is_promoted,
        deployed_version_id=s.deployed_version_id,
        created_at=s.created_at,
        latest_version=_version(hydrated.latest_version),
        deployed_version=_version(hydrated.deployed_version),
    )


@router.get("", response_model=list[StrategyResponse])
async def list_strategies(
    include_archived: bool = True,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's strategies."""
    strategies = await StrategyVersionStore(db, owner_id).list_strategies(include_archived)
    return [_strategy_response(s) for s in strategies]


@router.post("", response_model=StrategyResponse, status_code=201)
async def create_strategy(
    request: CreateStrategyRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Create a strategy; version 1 is deployed."""
    hydrated = await StrategyVersionStore(db, owner_id).create_strategy(
        request.name,
        request.content,
        description=request.description,
        changelog=request.changelog,
    )
    return _strategy_response(hydrated)


@router.patch("/{strategy_id}", response_model=StrategyResponse)
async def update_strategy(
    strategy_id: str,
    request: UpdateStrategyRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Edit strategy metadata (name, description, archived, promoted)."""
    store = StrategyVersionStore(db, owner_id)
    try:
        await store.update_metadata(strategy_id, **request.model_dump(exclude_unset=True))
    except StrategyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    for hydrated in await store.list_strategies():
        if hydrated.strategy.id == strategy_id:
            return _strategy_response(hydrated)
    raise HTTPException(status_code=404, detail="Strategy not found")


@router.get("/{strategy_id}/versions", response_model=list[StrategyVersionResponse])
async def list_versions(
    strategy_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Version history, newest first."""
    try:
        versions = await StrategyVersionStore(db, owner_id).list_versions(strategy_id)
    except StrategyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [_version(v) for v in versions]


@router.post(
    "/{strategy_id}/versions",
    response_model=StrategyVersionResponse,
    status_code=201,
)
async def save_version(
    strategy_id: str,
    request: SaveVersionRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Save a new (undeployed) version."""
    try:
        version = await StrategyVersionStore(db, owner_id).save_version(
            strategy_id, request.content, changelog=request.changelog
        )
    except StrategyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _version(version)


@router.post("/{strategy_id}/deploy", response_model=StrategyVersionResponse)
async def deploy_version(
    strategy_id: str,
    request: DeployRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Deploy (or roll back to) a version."""
    try:
        version = await StrategyVersionStore(db, owner_id).deploy(strategy_id, request.version_id)
    except StrategyNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _version(version)
