import hashlib
import hmac
import threading

import pytest

from webhook_security import (
    DatabaseCounterStore,
    MemoryCounterStore,
    RateLimiter,
    SignatureVerifier,
    compute_signature,
    get_client_ip,
    verify_signature,
)

SECRET = 'shared-secret'
NOW = 1_700_000_000
BODY = b'{"jobs": [{"id": "1", "title": "Engineer"}]}'


def sign(body, secret=SECRET):
    return 'sha256=' + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestSignatureVerification:
    def test_valid_signature_passes(self):
        assert verify_signature(BODY, sign(BODY), str(NOW), SECRET, now=NOW)

    def test_compute_signature_matches_hmac(self):
        assert compute_signature(BODY, SECRET) == sign(BODY)

    def test_mutated_body_fails(self):
        signature = sign(BODY)
        mutated = bytearray(BODY)
        mutated[5] ^= 0x01
        assert not verify_signature(bytes(mutated), signature, str(NOW), SECRET, now=NOW)

    def test_mutated_signature_fails(self):
        signature = sign(BODY)
        last = signature[-1]
        tampered = signature[:-1] + ('0' if last != '0' else '1')
        assert not verify_signature(BODY, tampered, str(NOW), SECRET, now=NOW)

    @pytest.mark.parametrize('timestamp', [None, '', 'abc', '12abc', 'nan', 'inf'])
    def test_missing_or_non_numeric_timestamp_fails(self, timestamp):
        assert not verify_signature(BODY, sign(BODY), timestamp, SECRET, now=NOW)

    def test_replay_window_boundary(self):
        assert verify_signature(BODY, sign(BODY), str(NOW - 300), SECRET, now=NOW)
        assert not verify_signature(BODY, sign(BODY), str(NOW - 301), SECRET, now=NOW)

    def test_future_timestamps_are_bounded_too(self):
        assert verify_signature(BODY, sign(BODY), str(NOW + 300), SECRET, now=NOW)
        assert not verify_signature(BODY, sign(BODY), str(NOW + 301), SECRET, now=NOW)

    def test_fractional_clock_is_not_truncated(self):
        assert not verify_signature(BODY, sign(BODY), str(NOW - 300), SECRET, now=NOW + 0.9)
        assert verify_signature(BODY, sign(BODY), str(NOW - 300), SECRET, now=NOW + 0.0)
        assert not verify_signature(BODY, sign(BODY), str(NOW + 300.5), SECRET, now=NOW)

    def test_configurable_drift(self):
        assert not verify_signature(BODY, sign(BODY), str(NOW - 61), SECRET, now=NOW, max_drift=60)

    def test_empty_secret_never_verifies(self):
        assert not verify_signature(BODY, sign(BODY, ''), str(NOW), '', now=NOW)

    def test_signature_without_prefix_fails(self):
        bare = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert not verify_signature(BODY, bare, str(NOW), SECRET, now=NOW)

    def test_missing_signature_fails(self):
        assert not verify_signature(BODY, None, str(NOW), SECRET, now=NOW)

    def test_non_ascii_signature_is_rejected_not_raised(self):
        assert not verify_signature(BODY, 'sha256=ü' + 'a' * 63, str(NOW), SECRET, now=NOW)

    def test_verifier_uses_its_clock(self):
        verifier = SignatureVerifier(SECRET, clock=lambda: NOW + 1000)
        assert not verifier.verify(BODY, sign(BODY), str(NOW))
        assert verifier.verify(BODY, sign(BODY), str(NOW + 1000))


class TestClientIp:
    def test_cdn_header_wins(self):
        headers = {'CF-Connecting-IP': '104.16.1.7', 'X-Forwarded-For': '66.249.66.5'}
        assert get_client_ip(headers, '10.0.0.1') == '104.16.1.7'

    def test_first_forwarded_for_hop_is_used(self):
        headers = {'X-Forwarded-For': '66.249.66.5, 10.0.0.2'}
        assert get_client_ip(headers, '10.0.0.1') == '66.249.66.5'

    def test_private_and_reserved_addresses_are_skipped(self):
        headers = {'X-Forwarded-For': '192.168.1.20', 'X-Cluster-Client-IP': '66.249.66.9'}
        assert get_client_ip(headers, '10.0.0.1') == '66.249.66.9'

    def test_rfc7239_forwarded_header(self):
        assert get_client_ip({'Forwarded': 'for=66.249.66.60;proto=https'}, None) == '66.249.66.60'
        assert get_client_ip({'Forwarded': 'for="[2001:4860::8888]:4711"'}, None) == '2001:4860::8888'

    def test_header_lookup_is_case_insensitive(self):
        assert get_client_ip({'x-forwarded-for': '66.249.66.5'}, None) == '66.249.66.5'

    def test_falls_back_to_connection_address(self):
        assert get_client_ip({'X-Forwarded-For': 'garbage'}, '127.0.0.1') == '127.0.0.1'
        assert get_client_ip({}, None) == '0.0.0.0'


class TestRateLimiter:
    def test_tenth_allowed_eleventh_blocked_then_window_resets(self, clock):
        limiter = RateLimiter(MemoryCounterStore(clock=clock), max_requests=10, window_seconds=60)

        assert all(limiter.allow('66.249.66.1') for _ in range(10))
        assert not limiter.allow('66.249.66.1')

        clock.advance(61)
        assert limiter.allow('66.249.66.1')

    def test_blocked_requests_do_not_increment(self, clock):
        store = MemoryCounterStore(clock=clock)
        limiter = RateLimiter(store, max_requests=3, window_seconds=60)
        for _ in range(6):
            limiter.allow('client')
        assert store.get(RateLimiter.counter_key('client')) == 3

    def test_window_is_not_extended_by_later_hits(self, clock):
        limiter = RateLimiter(MemoryCounterStore(clock=clock), max_requests=2, window_seconds=60)
        assert limiter.allow('client')
        clock.advance(50)
        assert limiter.allow('client')
        assert not limiter.allow('client')
        clock.advance(11)
        assert limiter.allow('client')

    def test_clients_are_counted_separately(self, clock):
        limiter = RateLimiter(MemoryCounterStore(clock=clock), max_requests=1, window_seconds=60)
        assert limiter.allow('a')
        assert limiter.allow('b')
        assert not limiter.allow('a')

    def test_per_call_policy_overrides_defaults(self, clock):
        limiter = RateLimiter(MemoryCounterStore(clock=clock), max_requests=100, window_seconds=60)
        assert limiter.allow('client', max_requests=1, window_seconds=5)
        assert not limiter.allow('client', max_requests=1, window_seconds=5)

    def test_concurrent_callers_never_exceed_limit(self):
        limiter = RateLimiter(MemoryCounterStore(), max_requests=10, window_seconds=60)
        results = []
        lock = threading.Lock()

        def hit():
            allowed = limiter.allow('shared-client')
            with lock:
                results.append(allowed)

        threads = [threading.Thread(target=hit) for _ in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 10

    def test_purge_expired(self, clock):
        store = MemoryCounterStore(clock=clock)
        store.set('a', 1, 10)
        store.set('b', 1, 100)
        clock.advance(20)
        assert store.purge_expired() == 1
        assert store.get('b') == 1

    def test_database_counter_store(self, sqlite_store, clock):
        limiter = RateLimiter(DatabaseCounterStore(sqlite_store, clock=clock), max_requests=3, window_seconds=60)

        assert [limiter.allow('66.249.66.1') for _ in range(4)] == [True, True, True, False]
        assert limiter.allow('66.249.66.2')

        clock.advance(60)
        assert limiter.allow('66.249.66.1')

    def test_expired_counters_are_dropped_when_new_clients_arrive(self, clock):
        store = MemoryCounterStore(clock=clock)
        limiter = RateLimiter(store, max_requests=10, window_seconds=60)
        for i in range(500):
            limiter.allow(f'66.249.{i // 256}.{i % 256}')
        assert len(store) == 500

        clock.advance(3600)
        limiter.allow('66.249.66.250')

        assert len(store) == 1

    def test_database_counters_are_dropped_when_new_clients_arrive(self, sqlite_store, clock):
        limiter = RateLimiter(DatabaseCounterStore(sqlite_store, clock=clock), max_requests=10, window_seconds=60)
        for i in range(50):
            limiter.allow(f'66.249.66.{i}')
        assert sqlite_store.counter_count() == 50

        clock.advance(3600)
        limiter.allow('66.249.66.250')

        assert sqlite_store.counter_count() == 1
