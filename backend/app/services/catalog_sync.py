"""
Catalog Sync Orchestrator

One run: Init -> FetchSnapshot -> DetectDuplicates -> ProcessBatches -> ArchiveStale -> Summarize.
Per-item failures end up in the summary; only a missing default category or a
catalog fetch that exhausts its retries fails the run.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set
import asyncio
import enum
import logging
import uuid

from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.database import SessionLocal
from app.models.product import Product
from app.models.sync_run import CatalogSyncRun, SyncStatus, SyncTrigger
from app.services.cache_service import CatalogCache, catalog_cache
from app.services.category_service import CategoryRemap, detect_duplicate_categories, get_or_create_category
from app.services.image_resolver import ImageResolver
from app.services.product_sync import ItemProcessor, ItemResult
from app.services.retry import ItemError, Ok, with_storage_retry
from app.services.square_service import CATALOG_OBJECT_TYPES, SquareService, square_service

logger = logging.getLogger(__name__)

CATALOG_CACHE_PREFIX = "catalog:"
CATALOG_SEARCH_KEY = CatalogCache.make_key(
    f"{CATALOG_CACHE_PREFIX}search",
    {"object_types": CATALOG_OBJECT_TYPES, "include_related_objects": True, "include_deleted_objects": False},
)


class SyncState(str, enum.Enum):
    INIT = "init"
    FETCH_SNAPSHOT = "fetch_snapshot"
    DETECT_DUPLICATES = "detect_duplicates"
    PROCESS_BATCHES = "process_batches"
    ARCHIVE_STALE = "archive_stale"
    SUMMARIZE = "summarize"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncSummary:
    success: bool
    message: str
    total: int = 0
    synced: int = 0
    created: int = 0
    updated: int = 0
    archived: int = 0
    products_without_images: int = 0
    duplicate_categories: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    run_id: Optional[uuid.UUID] = None

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 100.0
        return round(self.synced / self.total * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "total": self.total,
            "synced": self.synced,
            "created": self.created,
            "updated": self.updated,
            "archived": self.archived,
            "products_without_images": self.products_without_images,
            "duplicate_categories": self.duplicate_categories,
            "success_rate": self.success_rate,
            "errors": self.errors,
            "run_id": str(self.run_id) if self.run_id else None,
        }


class SyncOrchestrator:
    """Drive a full catalog sync from Square into the local store"""

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        square_client: Optional[SquareService] = None,
        cache: Optional[CatalogCache] = None,
        image_resolver: Optional[ImageResolver] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        group_delay_ms: Optional[int] = None,
        batch_delay_ms: Optional[int] = None,
        archive_grace_hours: Optional[int] = None,
        default_category_name: Optional[str] = None,
        storage_retries: Optional[int] = None,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.square_client = square_client or square_service
        self.cache = cache if cache is not None else catalog_cache
        self.image_resolver = image_resolver or ImageResolver(self.square_client)
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.concurrency = concurrency or settings.SYNC_CONCURRENCY
        self.group_delay = (group_delay_ms if group_delay_ms is not None else settings.SYNC_GROUP_DELAY_MS) / 1000
        self.batch_delay = (batch_delay_ms if batch_delay_ms is not None else settings.SYNC_BATCH_DELAY_MS) / 1000
        self.archive_grace = timedelta(
            hours=archive_grace_hours if archive_grace_hours is not None else settings.ARCHIVE_GRACE_HOURS
        )
        self.default_category_name = default_category_name or settings.DEFAULT_CATEGORY_NAME
        self.storage_retries = storage_retries
        self.sleep = sleep
        self.clock = clock
        self.state = SyncState.INIT

    def _transition(self, state: SyncState) -> None:
        logger.debug("Catalog sync %s -> %s", self.state.value, state.value)
        self.state = state

    async def _storage(self, operation, label: str):
        return await with_storage_retry(operation, max_attempts=self.storage_retries, sleep=self.sleep, label=label)

    async def run(self, trigger: SyncTrigger = SyncTrigger.MANUAL, task_id: Optional[str] = None,
                  run_id: Optional[uuid.UUID] = None) -> SyncSummary:
        """
        Run one full catalog sync

        Args:
            trigger: What started the run (recorded in run history)
            task_id: Celery task id, if any
            run_id: Existing CatalogSyncRun to update instead of creating one

        Returns:
            SyncSummary; never raises
        """
        self.state = SyncState.INIT
        run_id = self._start_run(trigger, task_id, run_id)
        logger.info("Catalog sync started (trigger=%s, run=%s)", trigger.value, run_id)

        try:
            default_category_id = await self._storage(self._ensure_default_category, "default category")

            self._transition(SyncState.FETCH_SNAPSHOT)
            # A failed search must fail the run, never fall back to an old snapshot
            snapshot = await self.cache.get_or_compute(
                CATALOG_SEARCH_KEY, self.square_client.fetch_catalog_snapshot, serve_stale=False
            )

            self._transition(SyncState.DETECT_DUPLICATES)
            duplicates = detect_duplicate_categories(snapshot)
            remap = CategoryRemap.from_duplicates(duplicates)

            self._transition(SyncState.PROCESS_BATCHES)
            processor = ItemProcessor(
                session_factory=self.session_factory,
                image_resolver=self.image_resolver,
                remap=remap,
                default_category_id=default_category_id,
                max_retries=self.storage_retries,
                retry_sleep=self.sleep,
            )
            outcomes = await self._process_batches(processor, snapshot.items, snapshot)

            self._transition(SyncState.ARCHIVE_STALE)
            seen_ids = {
                outcome.value.square_id if isinstance(outcome, Ok) else outcome.context.get("square_id")
                for outcome in outcomes
            }
            seen_ids.discard(None)
            archived = await self._storage(lambda: self._archive_stale(seen_ids), "archive stale products")

            self._transition(SyncState.SUMMARIZE)
            summary = self._summarize(outcomes, len(snapshot.items), archived, len(duplicates))
        except Exception as e:
            self._transition(SyncState.FAILED)
            logger.error("Catalog sync failed: %s", e, exc_info=True)
            summary = SyncSummary(success=False, message=f"Catalog sync failed: {e}")
            summary.run_id = run_id
            self._finish_run(run_id, summary)
            return summary

        summary.run_id = run_id
        self._finish_run(run_id, summary)
        self._transition(SyncState.DONE)
        logger.info(
            "Catalog sync finished: %d/%d synced (%d created, %d updated), %d archived, %d errors",
            summary.synced, summary.total, summary.created, summary.updated, summary.archived, len(summary.errors),
        )
        return summary

    def _ensure_default_category(self) -> uuid.UUID:
        with self.session_factory() as db:
            return get_or_create_category(db, self.default_category_name).id

    async def _process_batches(self, processor: ItemProcessor, items, snapshot) -> List[Any]:
        outcomes: List[Any] = []
        batches = [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]

        for index, batch in enumerate(batches, start=1):
            if index > 1 and self.batch_delay:
                await self.sleep(self.batch_delay)
            logger.info("Processing batch %d/%d (%d items)", index, len(batches), len(batch))

            for start in range(0, len(batch), self.concurrency):
                if start and self.group_delay:
                    await self.sleep(self.group_delay)
                group = batch[start:start + self.concurrency]
                outcomes.extend(await asyncio.gather(*(processor.process(item, snapshot) for item in group)))

        return outcomes

    def _archive_stale(self, seen_ids: Set[str]) -> int:
        """Flag products missing from the snapshot for longer than the grace period as inactive"""
        if not seen_ids:
            logger.warning("Snapshot had no items, skipping archive pass")
            return 0

        now = self.clock()
        cutoff = now - self.archive_grace
        with self.session_factory() as db:
            stale = db.query(Product.id, Product.square_id).filter(
                Product.active == True,
                Product.square_id.notin_(seen_ids),
                Product.created_at < cutoff,
            ).all()
            if not stale:
                return 0

            for _, square_id in stale:
                logger.info("Archiving product %s (not in Square catalog)", square_id)

            count = db.query(Product).filter(
                Product.id.in_([product_id for product_id, _ in stale])
            ).update({Product.active: False, Product.updated_at: now}, synchronize_session=False)
            db.commit()
            return count

    @staticmethod
    def _summarize(outcomes: List[Any], total: int, archived: int, duplicate_categories: int) -> SyncSummary:
        results: List[ItemResult] = [o.value for o in outcomes if isinstance(o, Ok)]
        failures: List[ItemError] = [o for o in outcomes if isinstance(o, ItemError)]
        created = sum(1 for r in results if r.created)

        return SyncSummary(
            success=True,
            message=f"Synced {len(results)} of {total} items" + (f" with {len(failures)} errors" if failures else ""),
            total=total,
            synced=len(results),
            created=created,
            updated=len(results) - created,
            archived=archived,
            products_without_images=sum(1 for r in results if r.created and r.image_count == 0),
            duplicate_categories=duplicate_categories,
            errors=[
                {
                    "square_id": f.context.get("square_id"),
                    "name": f.context.get("name"),
                    "error": str(f.error),
                }
                for f in failures
            ],
        )

    # Run history

    def _start_run(self, trigger: SyncTrigger, task_id: Optional[str], run_id: Optional[uuid.UUID]) -> Optional[uuid.UUID]:
        try:
            with self.session_factory() as db:
                run = None
                if run_id is not None:
                    run = db.query(CatalogSyncRun).filter(CatalogSyncRun.id == run_id).first()
                if run is None:
                    run = CatalogSyncRun(trigger=trigger, task_id=task_id)
                    db.add(run)
                run.status = SyncStatus.IN_PROGRESS
                run.started_at = datetime.utcnow()
                db.commit()
                return run.id
        except Exception as e:
            logger.warning("Failed to record catalog sync run start: %s", e)
            return run_id

    def _finish_run(self, run_id: Optional[uuid.UUID], summary: SyncSummary) -> None:
        if run_id is None:
            return
        try:
            with self.session_factory() as db:
                run = db.query(CatalogSyncRun).filter(CatalogSyncRun.id == run_id).first()
                if not run:
                    return
                run.status = SyncStatus.COMPLETED if summary.success else SyncStatus.FAILED
                run.total_items = summary.total
                run.synced_items = summary.synced
                run.archived_items = summary.archived
                run.error_count = len(summary.errors)
                run.errors = summary.errors or None
                run.error_message = None if summary.success else summary.message
                run.completed_at = datetime.utcnow()
                db.commit()
        except Exception as e:
            logger.warning("Failed to record catalog sync run result: %s", e)
