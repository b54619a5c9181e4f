"""Strategy version store.

A strategy is a container with an immutable chain of versions numbered
1..N. Exactly one version is deployed at a time once a strategy exists.

Deploy/rollback is a single transaction: the container's
``deployed_version_id`` pointer is moved and every version's ``deployed``
flag is rewritten by one UPDATE, so readers never observe two deployed
versions or none.

Aggregate performance (pnl/wins/losses) changes only through
``record_outcome``, which is idempotent per ``(strategy, item)``.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from betledger.models.domain import Strategy, StrategyOutcome, StrategyVersion
from betledger.services.entities import Outcome
from betledger.services.ledger import translate_errors

logger = structlog.get_logger(__name__)


class StrategyNotFoundError(LookupError):
    """Strategy or version does not exist for this owner."""


@dataclass
class HydratedStrategy:
    """A strategy container with its latest and deployed versions."""

    strategy: Strategy
    latest_version: StrategyVersion | None
    deployed_version: StrategyVersion | None


class StrategyVersionStore:
    """Strategies and their versions for one owner."""

    def __init__(self, session: AsyncSession, owner_id: str):
        self.session = session
        self.owner_id = owner_id

    async def _get_strategy(self, strategy_id: str) -> Strategy:
        result = await self.session.execute(
            select(Strategy).where(
                Strategy.id == strategy_id,
                Strategy.owner_id == self.owner_id,
            )
        )
        strategy = result.scalar_one_or_none()
        if strategy is None:
            raise StrategyNotFoundError(f"Strategy {strategy_id} not found")
        return strategy

    async def create_strategy(
        self,
        name: str,
        content: dict[str, Any],
        description: str | None = None,
        changelog: str | None = None,
    ) -> HydratedStrategy:
        """Create a container plus version 1, deployed."""
        async with translate_errors(self.session, "creating strategy"):
            strategy = Strategy(owner_id=self.owner_id, name=name, description=description)
            self.session.add(strategy)
            await self.session.flush()

            version = StrategyVersion(
                strategy_id=strategy.id,
                version_number=1,
                author="system",
                changelog=changelog,
                content=content,
                deployed=True,
            )
            self.session.add(version)
            await self.session.flush()

            strategy.deployed_version_id = version.id
            await self.session.commit()

        logger.info("strategy_created", strategy_id=strategy.id, owner_id=self.owner_id)
        return HydratedStrategy(strategy=strategy, latest_version=version, deployed_version=version)

    async def save_version(
        self,
        strategy_id: str,
        content: dict[str, Any],
        changelog: str | None = None,
        author: str = "user",
    ) -> StrategyVersion:
        """Append version N+1 (not deployed)."""
        async with translate_errors(self.session, "saving new strategy version"):
            await self._get_strategy(strategy_id)
            result = await self.session.execute(
                select(func.coalesce(func.max(StrategyVersion.version_number), 0)).where(
                    StrategyVersion.strategy_id == strategy_id
                )
            )
            next_number = int(result.scalar_one()) + 1

            version = StrategyVersion(
                strategy_id=strategy_id,
                version_number=next_number,
                author=author,
                changelog=changelog,
                content=content,
                deployed=False,
            )
            self.session.add(version)
            await self.session.commit()

        logger.info(
            "strategy_version_saved",
            strategy_id=strategy_id,
            version_number=next_number,
        )
        return version

    async def deploy(self, strategy_id: str, version_id: str) -> StrategyVersion:
        """Make ``version_id`` the deployed version of the strategy."""
        async with translate_errors(self.session, "deploying strategy version"):
            await self._get_strategy(strategy_id)
            result = await self.session.execute(
                select(StrategyVersion).where(
                    StrategyVersion.id == version_id,
                    StrategyVersion.strategy_id == strategy_id,
                )
            )
            target = result.scalar_one_or_none()
            if target is None:
                raise StrategyNotFoundError(
                    f"Version {version_id} does not belong to strategy {strategy_id}"
                )

            await self.session.execute(
                update(Strategy)
                .where(Strategy.id == strategy_id)
                .values(deployed_version_id=version_id)
                .execution_options(synchronize_session="fetch")
            )
            await self.session.execute(
                update(StrategyVersion)
                .where(StrategyVersion.strategy_id == strategy_id)
                .values(deployed=case((StrategyVersion.id == version_id, True), else_=False))
                .execution_options(synchronize_session="fetch")
            )
            await self.session.commit()
            await self.session.refresh(target)

        logger.info(
            "strategy_version_deployed",
            strategy_id=strategy_id,
            version_id=version_id,
            version_number=target.version_number,
        )
        return target

    async def rollback(self, strategy_id: str, version_id: str) -> StrategyVersion:
        """Redeploy an earlier version."""
        return await self.deploy(strategy_id, version_id)

    async def list_versions(self, strategy_id: str) -> list[StrategyVersion]:
        """Versions of a strategy, newest first."""
        async with translate_errors(self.session, "fetching version history"):
            await self._get_strategy(strategy_id)
            result = await self.session.execute(
                select(StrategyVersion)
                .where(StrategyVersion.strategy_id == strategy_id)
                .order_by(StrategyVersion.version_number.desc())
            )
            return list(result.scalars().all())

    async def list_strategies(self, include_archived: bool = True) -> list[HydratedStrategy]:
        """Strategies of the owner, newest first, with latest and deployed versions."""
        async with translate_errors(self.session, "loading strategies"):
            query = select(Strategy).where(Strategy.owner_id == self.owner_id)
            if not include_archived:
                query = query.where(Strategy.is_archived.is_(False))
            result = await self.session.execute(
                query.order_by(Strategy.created_at.desc(), Strategy.name)
            )
            strategies = list(result.scalars().all())
            if not strategies:
                return []

            result = await self.session.execute(
                select(StrategyVersion)
                .where(StrategyVersion.strategy_id.in_([s.id for s in strategies]))
                .order_by(StrategyVersion.version_number)
            )
            versions_by_strategy: dict[str, list[StrategyVersion]] = {}
            for version in result.scalars():
                versions_by_strategy.setdefault(version.strategy_id, []).append(version)

        hydrated = []
        for strategy in strategies:
            versions = versions_by_strategy.get(strategy.id, [])
            deployed = next(
                (v for v in versions if v.id == strategy.deployed_version_id), None
            )
            hydrated.append(
                HydratedStrategy(
                    strategy=strategy,
                    latest_version=versions[-1] if versions else None,
                    deployed_version=deployed,
                )
            )
        return hydrated

    async def update_metadata(
        self,
        strategy_id: str,
        name: str | None = None,
        description: str | None = None,
        is_archived: bool | None = None,
        is_promoted: bool | None = None,
    ) -> Strategy:
        """Edit container metadata. Aggregates are not editable here."""
        async with translate_errors(self.session, "updating strategy container"):
            strategy = await self._get_strategy(strategy_id)
            if name is not None:
                strategy.name = name
            if description is not None:
                strategy.description = description
            if is_archived is not None:
                strategy.is_archived = is_archived
            if is_promoted is not None:
                strategy.is_promoted = is_promoted
            await self.session.commit()
        return strategy

    async def record_outcome(
        self,
        strategy_id: str,
        outcome: Outcome,
        pnl: Decimal,
        item_id: str,
    ) -> bool:
        """
        Add a settled item's outcome to the strategy aggregates.

        Returns:
            False when the item was already recorded for this strategy
        """
        async with translate_errors(self.session, "recording strategy outcome"):
            await self._get_strategy(strategy_id)
            existing = await self.session.execute(
                select(StrategyOutcome.id).where(
                    StrategyOutcome.strategy_id == strategy_id,
                    StrategyOutcome.item_id == item_id,
                )
            )
            if existing.scalar_one_or_none() is not None:
                return False

            self.session.add(
                StrategyOutcome(
                    strategy_id=strategy_id,
                    item_id=item_id,
                    outcome=outcome.value,
                    pnl=pnl,
                )
            )
            try:
                await self.session.flush()
            except IntegrityError:
                # Recorded concurrently by another worker
                await self.session.rollback()
                return False

            won = 1 if outcome is Outcome.WON else 0
            await self.session.execute(
                update(Strategy)
                .where(Strategy.id == strategy_id)
                .values(
                    pnl=Strategy.pnl + pnl,
                    wins=Strategy.wins + won,
                    losses=Strategy.losses + (1 - won),
                )
                .execution_options(synchronize_session="fetch")
            )
            await self.session.commit()

        logger.info(
            "strategy_outcome_recorded",
            strategy_id=strategy_id,
            item_id=item_id,
            outcome=outcome.value,
            pnl=str(pnl),
        )
        return True
