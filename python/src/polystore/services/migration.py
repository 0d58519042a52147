"""
Batch-copy Migration

Copies every item from one adapter to another in scan pages of
MigrationConfig.batch_size, optionally re-reading the copied keys from the
target to confirm they landed.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..config.database_config import MigrationConfig
from ..config.logfire_config import get_logger, safe_span
from ..db.errors import DatabaseError, ErrorKind
from ..db.models import DatabaseKey, FilterCondition, ScanInput
from ..db.protocol import DataAccessLayer

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], Awaitable[Any]]


@dataclass
class MigrationFailure:
    key: DatabaseKey | None
    error: DatabaseError


@dataclass
class MigrationReport:
    scanned: int = 0
    copied: int = 0
    batches: int = 0
    failures: list[MigrationFailure] = field(default_factory=list)
    missing_after_validation: list[DatabaseKey] = field(default_factory=list)
    validated: bool = False
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return not self.failures and not self.missing_after_validation


class DataMigrator:
    def __init__(
        self,
        source: DataAccessLayer,
        target: DataAccessLayer,
        config: MigrationConfig,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.source = source
        self.target = target
        self.config = config
        self.on_progress = on_progress

    def _check_runnable(self) -> None:
        if not self.config.enabled:
            raise DatabaseError(
                ErrorKind.CONFIGURATION, "Migration is disabled. Set MIGRATION_ENABLED=true to run it."
            )
        if self.source is self.target:
            raise DatabaseError(ErrorKind.CONFIGURATION, "Migration source and target must be different")
        if self.config.batch_size <= 0:
            raise DatabaseError(ErrorKind.CONFIGURATION, "Migration batch size must be a positive integer")

    async def migrate(self, filter_condition: FilterCondition | None = None) -> MigrationReport:
        """
        Copy items from source to target.

        Args:
            filter_condition: Only items matching this condition are copied

        Returns:
            MigrationReport with counts, per-item failures and, when
            validation is on, keys missing from the target afterwards.

        Raises:
            DatabaseError: CONFIGURATION when migration is disabled or
                source and target are the same adapter; scan failures on
                the source propagate.
        """
        self._check_runnable()
        report = MigrationReport()
        start = time.perf_counter()
        copied_keys: list[DatabaseKey] = []

        with safe_span(
            "migration",
            source=self.source.provider_type.value,
            target=self.target.provider_type.value,
        ):
            cursor: Any = None
            while True:
                page = await self.source.scan(
                    ScanInput(
                        filter_condition=filter_condition,
                        limit=self.config.batch_size,
                        start_key=cursor,
                    )
                )
                if page.items:
                    report.batches += 1
                    await self._copy_batch(page.items, report, copied_keys)
                    logger.info(
                        f"Migration batch {report.batches}: {report.copied} copied, {len(report.failures)} failed"
                    )
                    if self.on_progress is not None:
                        await self.on_progress(report.copied, report.batches)
                cursor = page.cursor
                if not cursor:
                    break

            if self.config.validate_after_migration and copied_keys:
                report.missing_after_validation = await self._validate(copied_keys)
                report.validated = True

        report.duration = time.perf_counter() - start
        logger.info(
            f"Migration finished: scanned={report.scanned} copied={report.copied} "
            f"failed={len(report.failures)} missing={len(report.missing_after_validation)}"
        )
        return report

    async def _copy_batch(
        self,
        items: list[dict[str, Any]],
        report: MigrationReport,
        copied_keys: list[DatabaseKey],
    ) -> None:
        for item in items:
            report.scanned += 1
            key: DatabaseKey | None = None
            try:
                key = DatabaseKey.from_item(item)
                await self.target.put(item)
            except DatabaseError as exc:
                report.failures.append(MigrationFailure(key, exc))
                logger.warning(f"Failed to migrate item {key}: {exc.code} {exc.message}")
                continue
            report.copied += 1
            copied_keys.append(key)

    async def _validate(self, keys: list[DatabaseKey]) -> list[DatabaseKey]:
        missing: list[DatabaseKey] = []
        size = self.config.batch_size
        for offset in range(0, len(keys), size):
            chunk = keys[offset : offset + size]
            found = await self.target.batch_get(chunk)
            present = {(str(i.get("pk")), str(i.get("sk"))) for i in found}
            for key in chunk:
                sort = key.sort if key.sort is not None else key.primary
                if (str(key.primary), str(sort)) not in present:
                    missing.append(key)
        if missing:
            logger.warning(f"Migration validation found {len(missing)} missing item(s) in target")
        return missing
