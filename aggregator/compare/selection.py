"""Storefront package selection driven by best-price marks."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from aggregator.compare.equivalence import EquivalenceKey, key_for
from aggregator.config import settings
from aggregator.db.models import UnifiedPackage
from aggregator.db.session import AsyncSessionLocal
from aggregator.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MODE_AUTO = "auto"
MODE_MANUAL = "manual"
SELECTION_MODES = (MODE_AUTO, MODE_MANUAL)


@dataclass
class SelectionResult:
    """Outcome of one selection pass."""

    mode: str
    packages_enabled: int = 0
    packages_disabled: int = 0
    fallback_enabled: int = 0  # enabled because their group had nothing else visible
    manual_overrides: int = 0


@dataclass
class SelectionStatistics:
    mode: str
    total_packages: int = 0
    enabled_packages: int = 0
    disabled_packages: int = 0
    manual_overrides: int = 0
    best_price_packages: int = 0


def pick_preferred(members: Iterable[UnifiedPackage]) -> Optional[UnifiedPackage]:
    """Cheapest package of an enabled preferred provider that admins have not pinned."""
    eligible = [
        p for p in members
        if not p.manual_override and p.provider.enabled and p.provider.is_preferred
    ]
    if not eligible:
        return None
    return min(eligible, key=lambda p: (p.sell_price, p.provider.failover_priority, p.id))


async def _set_visibility(db: AsyncSession, package_ids: list[int], enabled: bool, **values) -> None:
    if not package_ids:
        return
    # Visibility is not a catalog change; keep updated_at for comparison tie-breaks
    await db.execute(
        update(UnifiedPackage)
        .where(UnifiedPackage.id.in_(package_ids))
        .values(is_enabled=enabled, updated_at=UnifiedPackage.updated_at, **values)
        .execution_options(synchronize_session=False)
    )


class PackageSelectionService:
    """
    Decide which packages the storefront shows.

    In auto mode every best-price package is enabled and every other package
    is disabled. A group left with nothing visible (no best price, or its
    winner hidden by an admin) shows its preferred provider's package instead.
    Packages with a manual override are never touched. Manual mode leaves all
    visibility to admins.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        mode: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.mode = mode

    @property
    def current_mode(self) -> str:
        mode = (self.mode or settings.package_selection_mode).lower()
        if mode not in SELECTION_MODES:
            raise ValidationError(
                f"Unknown package selection mode {mode!r}; expected one of {', '.join(SELECTION_MODES)}"
            )
        return mode

    async def run_selection(self) -> SelectionResult:
        """Apply auto selection to the whole catalog."""
        mode = self.current_mode
        result = SelectionResult(mode=mode)
        if mode == MODE_MANUAL:
            logger.info("Package selection mode is manual; storefront left unchanged")
            return result

        async with self.session_factory() as db:
            async with db.begin():
                packages = (
                    await db.execute(
                        select(UnifiedPackage)
                        .options(selectinload(UnifiedPackage.provider))
                        .order_by(UnifiedPackage.id)
                    )
                ).scalars().all()

                wanted: dict[int, bool] = {}
                for package in packages:
                    if package.manual_override:
                        result.manual_overrides += 1
                        continue
                    wanted[package.id] = package.active and package.is_best_price

                groups: dict[EquivalenceKey, list[UnifiedPackage]] = defaultdict(list)
                for package in packages:
                    if not package.active:
                        continue
                    key = key_for(package)
                    if key is not None:
                        groups[key].append(package)

                for key, members in groups.items():
                    if any(wanted.get(p.id, p.is_enabled) for p in members):
                        continue
                    fallback = pick_preferred(members)
                    if fallback is None:
                        continue
                    wanted[fallback.id] = True
                    result.fallback_enabled += 1
                    logger.debug(
                        f"No visible package for {key.as_string()}; "
                        f"showing {fallback.provider.slug} package {fallback.id}"
                    )

                to_enable = [p.id for p in packages if p.id in wanted and wanted[p.id] and not p.is_enabled]
                to_disable = [p.id for p in packages if p.id in wanted and not wanted[p.id] and p.is_enabled]
                await _set_visibility(db, to_enable, True)
                await _set_visibility(db, to_disable, False)
                result.packages_enabled = len(to_enable)
                result.packages_disabled = len(to_disable)

        logger.info(
            f"Package selection complete: {result.packages_enabled} enabled, "
            f"{result.packages_disabled} disabled, {result.fallback_enabled} preferred fallbacks, "
            f"{result.manual_overrides} manual overrides kept"
        )
        return result

    async def set_manual_override(self, package_id: int, is_enabled: bool) -> UnifiedPackage:
        """Pin a package's visibility; auto selection skips it from now on."""
        async with self.session_factory() as db:
            async with db.begin():
                if await db.get(UnifiedPackage, package_id) is None:
                    raise NotFoundError(f"Package {package_id} not found")
                await _set_visibility(db, [package_id], is_enabled, manual_override=True)
            package = await self._reload(db, package_id)
        logger.info(
            f"Manual override on package {package_id}: {'enabled' if is_enabled else 'disabled'}"
        )
        return package

    async def clear_manual_override(self, package_id: int) -> UnifiedPackage:
        """
        Hand a package back to auto selection.

        In auto mode its visibility immediately follows its best-price mark;
        the preferred-provider fallback is applied on the next selection pass.
        """
        mode = self.current_mode
        async with self.session_factory() as db:
            async with db.begin():
                package = await db.get(UnifiedPackage, package_id)
                if package is None:
                    raise NotFoundError(f"Package {package_id} not found")
                enabled = package.is_enabled
                if mode == MODE_AUTO:
                    enabled = package.active and package.is_best_price
                await _set_visibility(db, [package_id], enabled, manual_override=False)
            package = await self._reload(db, package_id)
        logger.info(f"Cleared manual override on package {package_id}")
        return package

    async def get_statistics(self) -> SelectionStatistics:
        stats = SelectionStatistics(mode=self.current_mode)
        async with self.session_factory() as db:
            row = (
                await db.execute(
                    select(
                        func.count(UnifiedPackage.id),
                        func.count(UnifiedPackage.id).filter(UnifiedPackage.is_enabled.is_(True)),
                        func.count(UnifiedPackage.id).filter(UnifiedPackage.manual_override.is_(True)),
                        func.count(UnifiedPackage.id).filter(UnifiedPackage.is_best_price.is_(True)),
                    ).where(UnifiedPackage.active.is_(True))
                )
            ).one()
        stats.total_packages, stats.enabled_packages, stats.manual_overrides, stats.best_price_packages = row
        stats.disabled_packages = stats.total_packages - stats.enabled_packages
        return stats

    @staticmethod
    async def _reload(db: AsyncSession, package_id: int) -> UnifiedPackage:
        result = await db.execute(
            select(UnifiedPackage)
            .where(UnifiedPackage.id == package_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
