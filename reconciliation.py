#!/usr/bin/env python3
"""
Reconciles a DriveHR job snapshot against the listing store.

A sync runs in two independently committed phases:

1. create/update: one bulk lookup of existing records, then every incoming
   job is written inside a single transaction. A job that fails on its own
   (missing id/title, rejected write) is reported and skipped; a failure of
   the store itself rolls the whole phase back.
2. stale removal: every stored listing whose job id is absent from the
   snapshot is permanently deleted inside a second transaction. A failure
   here rolls back the deletions only; phase 1 stays committed.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple
import logging

from activity_log import ActivityLogger
from config import SYNC_SOURCE, SYNC_VERSION
from database_manager import ListingStore, ListingStoreError, ListingWriteError
from job_listing import IncomingListing, InvalidListingError, normalize_external_id

logger = logging.getLogger(__name__)

ACTION_CREATED = 'created'
ACTION_UPDATED = 'updated'


class ReconciliationError(Exception):
    """A sync failed as a whole"""


class BatchProcessingError(ReconciliationError):
    """Create/update phase rolled back; nothing from the batch was written"""


class StaleRemovalError(ReconciliationError):
    """Deletion phase rolled back; creates and updates stay committed"""

    def __init__(self, message: str, result: Optional['ReconciliationResult'] = None):
        super().__init__(message)
        self.result = result


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ReconciliationResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    errors: List[str] = field(default_factory=list)
    removed_job_ids: List[str] = field(default_factory=list)
    timestamp: str = ''
    source: str = SYNC_SOURCE

    @property
    def removed(self) -> int:
        return len(self.removed_job_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'processed': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'total': self.total,
            'errors': list(self.errors),
            'removed': self.removed,
            'removed_job_ids': list(self.removed_job_ids),
            'timestamp': self.timestamp,
            'source': self.source,
        }


class ReconciliationEngine:
    def __init__(self, store: ListingStore,
                 on_before_upsert: Optional[Callable[[IncomingListing, str], None]] = None,
                 on_before_delete: Optional[Callable[[int, str], None]] = None,
                 on_after_delete: Optional[Callable[[int, str], None]] = None,
                 activity_log: Optional[ActivityLogger] = None,
                 sync_version: str = SYNC_VERSION,
                 clock: Callable[[], datetime] = _utc_now):
        self.store = store
        self.on_before_upsert = on_before_upsert
        self.on_before_delete = on_before_delete
        self.on_after_delete = on_after_delete
        self.activity_log = activity_log or ActivityLogger(False)
        self.sync_version = sync_version
        self.clock = clock

    def reconcile(self, jobs: Sequence[Any]) -> ReconciliationResult:
        """Make the store match the snapshot in jobs exactly"""
        result, current_ids = self.process_jobs(jobs)
        try:
            result.removed_job_ids = self.remove_stale_jobs(current_ids)
        except StaleRemovalError as e:
            e.result = result
            raise
        return result

    def _parse(self, jobs: Sequence[Any], result: ReconciliationResult) -> List[Tuple[int, Optional[IncomingListing]]]:
        parsed = []
        for index, job in enumerate(jobs):
            if not isinstance(job, dict):
                result.skipped += 1
                result.errors.append(f"Job at index {index}: Invalid job data format")
                parsed.append((index, None))
                continue
            try:
                parsed.append((index, IncomingListing.from_payload(job)))
            except InvalidListingError as e:
                result.errors.append(f"Job '{self._label(job)}' at index {index}: {e}")
                parsed.append((index, None))
            except Exception as e:
                logger.warning(f"Could not normalize job at index {index}: {e}")
                result.errors.append(f"Job '{self._label(job)}' at index {index}: {e}")
                parsed.append((index, None))
        return parsed

    @staticmethod
    def _label(job: Dict[str, Any]) -> str:
        return normalize_external_id(job.get('id')) or 'unknown'

    def process_jobs(self, jobs: Sequence[Any]) -> Tuple[ReconciliationResult, Set[str]]:
        result = ReconciliationResult(total=len(jobs))
        parsed = self._parse(jobs, result)
        listings = [listing for _, listing in parsed if listing is not None]
        current_ids = {listing.external_id for listing in listings}

        now = self.clock()

        try:
            # One lookup for the whole batch instead of one per job
            existing = self.store.bulk_lookup_by_external_ids([listing.external_id for listing in listings])

            with self.store.transaction():
                for listing in listings:
                    self._store_listing(listing, existing, result, now)
        except ListingStoreError as e:
            logger.error(f"Job batch rolled back: {e}")
            raise BatchProcessingError(f"Job batch failed: {e}") from e
        except Exception as e:
            logger.exception("Unexpected error while processing job batch")
            raise BatchProcessingError(f"Job batch failed: {e}") from e

        result.timestamp = now.isoformat()
        return result, current_ids

    def _store_listing(self, listing: IncomingListing, existing: Dict[str, int],
                       result: ReconciliationResult, now: datetime) -> None:
        existing_record_id = existing.get(listing.external_id)
        action = ACTION_UPDATED if existing_record_id is not None else ACTION_CREATED

        try:
            with self.store.savepoint():
                if self.on_before_upsert:
                    self.on_before_upsert(listing, action)
                record_id = self.store.upsert(
                    listing.external_id,
                    listing.to_fields(now, self.sync_version),
                    existing_record_id
                )
        except ListingWriteError as e:
            result.errors.append(f"Job '{listing.external_id}': {e}")
            return
        except ListingStoreError:
            raise
        except Exception as e:
            result.errors.append(f"Job '{listing.external_id}': {e}")
            return

        # A later duplicate in the same batch updates this record
        existing[listing.external_id] = record_id

        if action == ACTION_CREATED:
            result.created += 1
        else:
            result.updated += 1

    def remove_stale_jobs(self, current_ids: Set[str]) -> List[str]:
        """Hard-delete every active listing whose job id is not in current_ids"""
        removed_job_ids = []
        try:
            with self.store.transaction():
                for record_id, job_id in self.store.bulk_fetch_all_active_external_ids():
                    if job_id in current_ids:
                        continue

                    if self.on_before_delete:
                        self.on_before_delete(record_id, job_id)

                    if self.store.hard_delete(record_id):
                        removed_job_ids.append(job_id)
                        if self.on_after_delete:
                            self.on_after_delete(record_id, job_id)
        except Exception as e:
            logger.error(f"Stale job removal rolled back: {e}")
            raise StaleRemovalError(f"Failed to remove stale jobs: {e}") from e

        if removed_job_ids:
            self.activity_log(f"Removed {len(removed_job_ids)} stale jobs", {'removed_job_ids': removed_job_ids})

        return removed_job_ids
