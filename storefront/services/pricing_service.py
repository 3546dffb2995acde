# FILE: storefront/services/pricing_service.py
"""
Credit price table.

Prices live in the ``system_config`` key/value table. Callers take one
``PricingSnapshot`` per operation and price everything from it; the provider
only decides how stale that snapshot may be.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import PRICING_CACHE_TTL_SECONDS
from storefront.core.errors import ValidationError
from storefront.core.retry import run_in_transaction
from storefront.models.system_config import SystemConfig

logger = logging.getLogger("storefront.pricing")

WATERMARK_UNLOCK_COST = "WATERMARK_UNLOCK_COST"
WATERMARK_ADD_COST = "WATERMARK_ADD_COST"
WATERMARK_REMOVE_COST = "WATERMARK_REMOVE_COST"
MAIN_IMAGE_STANDARD_COST = "MAIN_IMAGE_STANDARD_COST"
MAIN_IMAGE_RETRY_COST = "MAIN_IMAGE_RETRY_COST"
DETAIL_PAGE_STANDARD_COST = "DETAIL_PAGE_STANDARD_COST"
DETAIL_PAGE_RETRY_COST = "DETAIL_PAGE_RETRY_COST"
IMAGE_EDIT_COST = "IMAGE_EDIT_COST"

DEFAULT_COSTS: Dict[str, int] = {
    WATERMARK_UNLOCK_COST: 100,
    WATERMARK_ADD_COST: 0,
    WATERMARK_REMOVE_COST: 50,
    MAIN_IMAGE_STANDARD_COST: 199,
    MAIN_IMAGE_RETRY_COST: 99,
    DETAIL_PAGE_STANDARD_COST: 199,
    DETAIL_PAGE_RETRY_COST: 99,
    IMAGE_EDIT_COST: 199,
}

COST_DESCRIPTIONS: Dict[str, str] = {
    WATERMARK_UNLOCK_COST: "Credits to unlock watermark editing on a generation",
    WATERMARK_ADD_COST: "Credits to add a watermark",
    WATERMARK_REMOVE_COST: "Credits per image for watermark removal",
    MAIN_IMAGE_STANDARD_COST: "Main image generation",
    MAIN_IMAGE_RETRY_COST: "Main image retry (discounted)",
    DETAIL_PAGE_STANDARD_COST: "Detail page generation",
    DETAIL_PAGE_RETRY_COST: "Detail page retry (discounted)",
    IMAGE_EDIT_COST: "Image edit (redraw one output)",
}

COST_KEYS = tuple(DEFAULT_COSTS)


@dataclass(frozen=True)
class PricingSnapshot:
    costs: Mapping[str, int]
    version: int = 0
    fetched_at: float = field(default_factory=time.monotonic)
    fallback: bool = False

    @classmethod
    def build(cls, costs: Mapping[str, int], version: int = 0, fallback: bool = False) -> "PricingSnapshot":
        merged = dict(DEFAULT_COSTS)
        merged.update(costs)
        return cls(costs=MappingProxyType(merged), version=version, fallback=fallback)

    def cost(self, key: str) -> int:
        if key not in self.costs:
            raise ValidationError(f"Unknown cost key: {key}")
        return self.costs[key]

    def as_dict(self) -> Dict[str, int]:
        return dict(self.costs)


def parse_rows(rows: List[SystemConfig]) -> Dict[str, int]:
    """Non-negative integer values per known key; bad or unknown rows are skipped (defaults apply)."""
    parsed: Dict[str, int] = {}
    for row in rows:
        if row.key not in DEFAULT_COSTS:
            continue
        try:
            cost = int(str(row.value).strip())
        except ValueError:
            logger.warning(f"Ignoring non-integer price {row.key}={row.value!r}")
            continue
        if cost < 0:
            logger.warning(f"Ignoring negative price {row.key}={row.value!r}")
            continue
        parsed[row.key] = cost
    return parsed


class PricingProvider:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        ttl_seconds: float = PRICING_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._ttl = ttl_seconds
        self._clock = clock
        self._cached: Optional[PricingSnapshot] = None
        self._version = 0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._cached = None

    def _fresh(self) -> bool:
        return self._cached is not None and (self._clock() - self._cached.fetched_at) < self._ttl

    async def snapshot(self) -> PricingSnapshot:
        if self._fresh():
            return self._cached

        async with self._lock:
            if self._fresh():
                return self._cached

            self._version += 1
            try:
                async with self._session_factory() as db:
                    rows = await db.execute(select(SystemConfig).where(SystemConfig.key.in_(COST_KEYS)))
                    costs = parse_rows(list(rows.scalars().all()))
                snap = PricingSnapshot.build(costs, version=self._version)
            except SQLAlchemyError as e:
                logger.warning(f"Price table unavailable, using defaults: {e}")
                snap = PricingSnapshot.build({}, version=self._version, fallback=True)

            self._cached = PricingSnapshot(
                costs=snap.costs, version=snap.version, fetched_at=self._clock(), fallback=snap.fallback
            )
            return self._cached

    # ─────────────────────────────────────────────
    # ADMIN
    # ─────────────────────────────────────────────

    async def list_costs(self) -> List[Dict[str, Any]]:
        async with self._session_factory() as db:
            rows = await db.execute(select(SystemConfig).where(SystemConfig.key.in_(COST_KEYS)))
            by_key = {r.key: r for r in rows.scalars().all()}

        items = []
        for key in COST_KEYS:
            row = by_key.get(key)
            items.append({
                "key": key,
                "value": row.value if row else str(DEFAULT_COSTS[key]),
                "description": (row.description if row and row.description else COST_DESCRIPTIONS[key]),
                "updated_at": row.updated_at if row else None,
            })
        return items

    async def update_cost(self, key: str, value: Any, description: Optional[str] = None) -> int:
        if key not in DEFAULT_COSTS:
            raise ValidationError(f"Unknown cost key: {key}")
        if isinstance(value, bool):
            raise ValidationError("Cost must be an integer")
        try:
            cost = int(value)
        except (TypeError, ValueError):
            raise ValidationError("Cost must be an integer", {"key": key, "value": value})
        if cost < 0 or str(cost) != str(value).strip():
            raise ValidationError("Cost must be a non-negative integer", {"key": key, "value": value})

        async def _upsert(db: AsyncSession):
            row = await db.get(SystemConfig, key)
            if row:
                row.value = str(cost)
                if description:
                    row.description = description
            else:
                db.add(SystemConfig(key=key, value=str(cost), description=description or COST_DESCRIPTIONS[key]))

        await run_in_transaction(self._session_factory, _upsert)
        self.invalidate()
        logger.info(f"Price {key} set to {cost}")
        return cost

    async def seed_costs(self) -> int:
        """Insert missing default rows; existing values are left alone."""
        async def _seed(db: AsyncSession) -> int:
            rows = await db.execute(select(SystemConfig.key).where(SystemConfig.key.in_(COST_KEYS)))
            existing = set(rows.scalars().all())
            missing = [k for k in COST_KEYS if k not in existing]
            for key in missing:
                db.add(SystemConfig(key=key, value=str(DEFAULT_COSTS[key]), description=COST_DESCRIPTIONS[key]))
            return len(missing)

        added = await run_in_transaction(self._session_factory, _seed)
        if added:
            logger.info(f"Seeded {added} default prices")
            self.invalidate()
        return added
