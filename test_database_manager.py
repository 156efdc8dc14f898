from datetime import datetime, timezone

import pytest

from database_manager import DatabaseManager, ListingWriteError
from job_listing import IncomingListing
from reconciliation import ReconciliationEngine

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def fields_for(job_id, title='Engineer', **extra):
    return IncomingListing.from_payload(dict({'id': job_id, 'title': title}, **extra)).to_fields(NOW)


def test_init_is_idempotent(sqlite_store):
    DatabaseManager(database_url='', db_path=sqlite_store.db_path)
    assert sqlite_store.count_listings() == 0


def test_insert_then_update(sqlite_store):
    record_id = sqlite_store.upsert('A1', fields_for('A1'))
    assert sqlite_store.upsert('A1', fields_for('A1', 'Lead Engineer'), record_id) == record_id

    listing = sqlite_store.get_listing('A1')
    assert listing.record_id == record_id
    assert listing.title == 'Lead Engineer'
    assert listing.source == 'drivehr'
    assert sqlite_store.count_listings() == 1


def test_update_of_missing_record_is_an_item_error(sqlite_store):
    with pytest.raises(ListingWriteError):
        sqlite_store.upsert('A1', fields_for('A1'), existing_record_id=999)


def test_duplicate_active_job_id_is_an_item_error(sqlite_store):
    sqlite_store.upsert('A1', fields_for('A1'))
    with pytest.raises(ListingWriteError):
        sqlite_store.upsert('A1', fields_for('A1'))


def test_trashed_rows_free_the_job_id(sqlite_store):
    old_id = sqlite_store.upsert('A1', fields_for('A1'))
    sqlite_store.set_status(old_id, 'trash')

    new_id = sqlite_store.upsert('A1', fields_for('A1'))

    assert new_id != old_id
    assert sqlite_store.bulk_lookup_by_external_ids(['A1']) == {'A1': new_id}
    assert sqlite_store.bulk_fetch_all_active_external_ids() == [(new_id, 'A1')]


def test_bulk_lookup_spans_chunks(sqlite_store):
    ids = [f'job-{i}' for i in range(620)]
    with sqlite_store.transaction():
        for job_id in ids:
            sqlite_store.upsert(job_id, fields_for(job_id))

    found = sqlite_store.bulk_lookup_by_external_ids(ids + ['missing', ''])

    assert len(found) == 620
    assert 'missing' not in found


def test_hard_delete(sqlite_store):
    record_id = sqlite_store.upsert('A1', fields_for('A1'))
    assert sqlite_store.hard_delete(record_id) is True
    assert sqlite_store.hard_delete(record_id) is False
    assert sqlite_store.get_listing('A1') is None


def test_transaction_rolls_back_on_error(sqlite_store):
    sqlite_store.upsert('A1', fields_for('A1'))

    with pytest.raises(RuntimeError):
        with sqlite_store.transaction():
            sqlite_store.upsert('B2', fields_for('B2'))
            raise RuntimeError('abort')

    assert sqlite_store.get_listing('B2') is None
    assert sqlite_store.count_listings() == 1


def test_savepoint_recovers_from_failed_statement(sqlite_store):
    with sqlite_store.transaction():
        sqlite_store.upsert('A1', fields_for('A1'))
        with pytest.raises(ListingWriteError):
            with sqlite_store.savepoint():
                sqlite_store.upsert('A1', fields_for('A1'))
        sqlite_store.upsert('B2', fields_for('B2'))

    assert sqlite_store.count_listings() == 2


def test_list_listings_newest_first(sqlite_store):
    sqlite_store.upsert('old', fields_for('old', postedDate='2023-01-01'))
    sqlite_store.upsert('new', fields_for('new', postedDate='2024-01-01'))
    sqlite_store.upsert('mid', fields_for('mid', postedDate='2023-06-01'))

    assert [listing.job_id for listing in sqlite_store.list_listings()] == ['new', 'mid', 'old']
    assert [listing.job_id for listing in sqlite_store.list_listings(limit=1, offset=1)] == ['mid']


def test_engine_against_sqlite(sqlite_store):
    engine = ReconciliationEngine(sqlite_store, clock=lambda: NOW)
    engine.reconcile([{'id': '1', 'title': 'One'}, {'id': '2', 'title': 'Two'}])

    result = engine.reconcile([{'id': '2', 'title': 'Two v2'}, {'id': '3', 'title': 'Three'}, {'id': '3'}])

    assert (result.created, result.updated, result.removed_job_ids) == (1, 1, ['1'])
    assert len(result.errors) == 1
    assert sorted(job_id for _, job_id in sqlite_store.bulk_fetch_all_active_external_ids()) == ['2', '3']
    assert sqlite_store.get_listing('2').title == 'Two v2'


def test_counter_roundtrip(sqlite_store):
    with sqlite_store.counter_lock('k'):
        assert sqlite_store.counter_get('k', 100.0) is None
        sqlite_store.counter_set('k', 1, 160.0)
        assert sqlite_store.counter_incr('k') == 2

    assert sqlite_store.counter_get('k', 159.0) == 2
    assert sqlite_store.counter_get('k', 160.0) is None
