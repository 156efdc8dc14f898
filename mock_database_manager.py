"""
In-memory listing store for testing the sync engine without a database
"""
import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database_manager import ListingStore, ListingStoreError, ListingWriteError, StoreUnavailableError
from job_listing import StoredListing


class MockDatabaseManager(ListingStore):
    """Mock listing store with snapshot transactions and fault injection.

    The fail_* attributes make individual writes, commits or deletes
    fail so error paths can be exercised.
    """

    def __init__(self):
        self.records: Dict[int, Dict[str, Any]] = {}
        self.next_id = 1
        self.calls: List[str] = []

        self.fail_upsert_for = set()       # external ids -> ListingWriteError
        self.crash_upsert_for = set()      # external ids -> StoreUnavailableError
        self.fail_delete_for = set()       # record ids -> StoreUnavailableError
        self.refuse_delete_for = set()     # record ids -> hard_delete returns False
        self.fail_next_commit = False

        self._lock = threading.RLock()
        self._in_transaction = False
        self._backup: Optional[Tuple[Dict[int, Dict[str, Any]], int]] = None

    def _state(self):
        return copy.deepcopy(self.records), self.next_id

    def _restore(self, state):
        self.records, self.next_id = state

    def snapshot(self) -> Dict[int, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self.records)

    def seed(self, job_id: str, title: str = 'Seeded job', status: str = 'publish') -> int:
        with self._lock:
            record_id = self.next_id
            self.next_id += 1
            self.records[record_id] = {'job_id': job_id, 'title': title, 'status': status}
            return record_id

    def active_job_ids(self) -> set:
        with self._lock:
            return {record['job_id'] for record in self.records.values() if record.get('status') != 'trash'}

    # Transactions

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._in_transaction:
            self._lock.release()
            raise ListingStoreError("A transaction is already active")
        self.calls.append('begin_transaction')
        self._in_transaction = True
        self._backup = self._state()

    def commit(self) -> None:
        if not self._in_transaction:
            raise ListingStoreError("No active transaction to commit")
        self.calls.append('commit')
        if self.fail_next_commit:
            self.fail_next_commit = False
            raise StoreUnavailableError("Commit failed: simulated store outage")
        self._end_transaction()

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        self.calls.append('rollback')
        self._restore(self._backup)
        self._end_transaction()

    def _end_transaction(self):
        self._in_transaction = False
        self._backup = None
        self._lock.release()

    @contextmanager
    def savepoint(self):
        with self._lock:
            state = self._state()
            try:
                yield
            except BaseException:
                self._restore(state)
                raise

    # ListingStore

    def bulk_lookup_by_external_ids(self, ids: Iterable[str]) -> Dict[str, int]:
        wanted = set(job_id for job_id in ids if job_id)
        with self._lock:
            self.calls.append('bulk_lookup_by_external_ids')
            return {
                record['job_id']: record_id
                for record_id, record in self.records.items()
                if record.get('status') != 'trash' and record['job_id'] in wanted
            }

    def upsert(self, external_id: str, fields: Dict[str, Any], existing_record_id: Optional[int] = None) -> int:
        with self._lock:
            self.calls.append('upsert')
            if external_id in self.crash_upsert_for:
                raise StoreUnavailableError("Simulated store outage")
            if external_id in self.fail_upsert_for:
                raise ListingWriteError(f"Simulated write failure for {external_id}")

            values = dict(fields, job_id=external_id)

            if existing_record_id is not None:
                record = self.records.get(existing_record_id)
                if record is None or record.get('status') == 'trash':
                    raise ListingWriteError(f"Listing record {existing_record_id} no longer exists")
                status = record.get('status', 'publish')
                self.records[existing_record_id] = dict(values, status=status)
                return existing_record_id

            if external_id in self.active_job_ids():
                raise ListingWriteError(f"Duplicate job_id {external_id}")

            record_id = self.next_id
            self.next_id += 1
            self.records[record_id] = dict(values, status='publish')
            return record_id

    def bulk_fetch_all_active_external_ids(self) -> List[Tuple[int, str]]:
        with self._lock:
            self.calls.append('bulk_fetch_all_active_external_ids')
            return [
                (record_id, record['job_id'])
                for record_id, record in sorted(self.records.items())
                if record.get('status') != 'trash'
            ]

    def hard_delete(self, record_id: int) -> bool:
        with self._lock:
            self.calls.append('hard_delete')
            if record_id in self.fail_delete_for:
                raise StoreUnavailableError(f"Simulated delete failure for record {record_id}")
            if record_id in self.refuse_delete_for:
                return False
            return self.records.pop(record_id, None) is not None

    # Read side

    def get_listing(self, job_id: str) -> Optional[StoredListing]:
        with self._lock:
            for record_id, record in self.records.items():
                if record['job_id'] == job_id and record.get('status') != 'trash':
                    return StoredListing.from_row(dict(record, record_id=record_id))
        return None

    def list_listings(self, limit: int = 50, offset: int = 0) -> List[StoredListing]:
        with self._lock:
            active = [
                StoredListing.from_row(dict(record, record_id=record_id))
                for record_id, record in sorted(self.records.items(), reverse=True)
                if record.get('status') != 'trash'
            ]
        return active[offset:offset + limit]

    def count_listings(self) -> int:
        return len(self.active_job_ids())

    def set_status(self, record_id: int, status: str) -> bool:
        with self._lock:
            if record_id not in self.records:
                return False
            self.records[record_id]['status'] = status
            return True
