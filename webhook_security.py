#!/usr/bin/env python3
"""
Secure webhook checks for the DriveHR job sync endpoint:
HMAC signature verification with replay protection, per-IP rate limiting
and proxy-aware client IP resolution
"""
import hashlib
import hmac
import ipaddress
import logging
import math
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Mapping, Optional, Tuple

from config import DEFAULT_MAX_TIMESTAMP_DRIFT, DEFAULT_RATE_LIMIT_MAX_REQUESTS, DEFAULT_RATE_LIMIT_WINDOW

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = 'sha256='

# Checked in order; the first header carrying a valid public IP wins
CLIENT_IP_HEADERS = [
    'CF-Connecting-IP',      # Cloudflare
    'X-Forwarded-For',       # Standard proxy header
    'X-Forwarded',           # Alternative proxy header
    'X-Cluster-Client-IP',   # Cluster environments
    'Forwarded-For',         # RFC 7239
    'Forwarded',             # RFC 7239
]


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Return the signature header value expected for raw_body"""
    digest = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def _parse_timestamp(timestamp_header: Optional[str]) -> Optional[float]:
    if timestamp_header is None:
        return None
    value = str(timestamp_header).strip()
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def verify_signature(raw_body: bytes, signature_header: Optional[str], timestamp_header: Optional[str],
                     secret: str, now: Optional[float] = None,
                     max_drift: int = DEFAULT_MAX_TIMESTAMP_DRIFT) -> bool:
    """Check the HMAC-SHA256 signature and timestamp freshness of a request body.

    Returns False for a missing or non-numeric timestamp, a timestamp more
    than max_drift seconds away from now, an empty secret, a signature
    without the sha256= prefix, or a digest mismatch. The digest comparison
    is constant-time.
    """
    timestamp = _parse_timestamp(timestamp_header)
    if timestamp is None:
        return False

    if now is None:
        now = time.time()
    if abs(now - timestamp) > max_drift:
        return False

    # An unset secret must never mean "no signature required"
    if not secret:
        return False

    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(signature_header.encode('utf-8'), expected.encode('utf-8'))


class SignatureVerifier:
    def __init__(self, secret: str, max_drift: int = DEFAULT_MAX_TIMESTAMP_DRIFT,
                 clock: Callable[[], float] = time.time):
        self.secret = secret or ''
        self.max_drift = max_drift
        self.clock = clock

    def verify(self, raw_body: bytes, signature_header: Optional[str], timestamp_header: Optional[str],
               now: Optional[float] = None) -> bool:
        if now is None:
            now = self.clock()
        return verify_signature(raw_body, signature_header, timestamp_header,
                                self.secret, now=now, max_drift=self.max_drift)


def _is_public_ip(candidate: str) -> bool:
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return not (ip.is_private or ip.is_reserved or ip.is_loopback
                or ip.is_link_local or ip.is_unspecified)


def _header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def _first_hop(header_name: str, value: str) -> str:
    first = value.split(',')[0].strip()
    if header_name == 'Forwarded':
        # for=203.0.113.7;proto=https  or  for="[2001:db8::1]:4711"
        for part in first.split(';'):
            key, _, token = part.strip().partition('=')
            if key.lower() == 'for':
                token = token.strip('"')
                if token.startswith('['):
                    return token[1:token.find(']')] if ']' in token else token[1:]
                if token.count(':') == 1:
                    return token.split(':')[0]
                return token
    return first


def get_client_ip(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """Resolve the real client IP behind proxies and CDNs"""
    for header_name in CLIENT_IP_HEADERS:
        value = _header_value(headers, header_name)
        if not value:
            continue
        ip = _first_hop(header_name, value)
        if _is_public_ip(ip):
            return ip

    if remote_addr and _is_public_ip(remote_addr):
        return remote_addr

    return remote_addr or '0.0.0.0'


class MemoryCounterStore:
    """Expiring counters held in process memory.

    All reads and writes for a rate check happen under one lock, so
    concurrent threads sharing a client key see exact counts.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._values: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def locked(self, key: str):
        with self._lock:
            yield

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self.clock():
                del self._values[key]
                return None
            return value

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def set(self, key: str, value: int, ttl: int) -> None:
        with self._lock:
            # Clean old entries
            self.purge_expired()
            self._values[key] = (value, self.clock() + ttl)

    def incr(self, key: str) -> int:
        """Increment an existing counter without extending its expiry"""
        with self._lock:
            value, expires_at = self._values[key]
            self._values[key] = (value + 1, expires_at)
            return value + 1

    def purge_expired(self) -> int:
        with self._lock:
            now = self.clock()
            expired = [key for key, (_, expires_at) in self._values.items() if expires_at <= now]
            for key in expired:
                del self._values[key]
            return len(expired)


class DatabaseCounterStore:
    """Expiring counters kept in the listings database so several
    worker processes share one count per client"""

    def __init__(self, db_manager, clock: Callable[[], float] = time.time):
        self.db_manager = db_manager
        self.clock = clock

    @contextmanager
    def locked(self, key: str):
        with self.db_manager.counter_lock(key):
            yield

    def get(self, key: str) -> Optional[int]:
        return self.db_manager.counter_get(key, self.clock())

    def set(self, key: str, value: int, ttl: int) -> None:
        now = self.clock()
        self.db_manager.counter_purge(now)
        self.db_manager.counter_set(key, value, now + ttl)

    def incr(self, key: str) -> int:
        return self.db_manager.counter_incr(key)


class RateLimiter:
    def __init__(self, store, max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS,
                 window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    @staticmethod
    def counter_key(client_key: str) -> str:
        return 'drivehr_webhook_rate_' + hashlib.md5(client_key.encode('utf-8')).hexdigest()

    def allow(self, client_key: str, max_requests: Optional[int] = None,
              window_seconds: Optional[int] = None) -> bool:
        """Count a request for client_key; False once the window is full"""
        if max_requests is None:
            max_requests = self.max_requests
        if window_seconds is None:
            window_seconds = self.window_seconds

        key = self.counter_key(client_key)
        with self.store.locked(key):
            requests = self.store.get(key)
            if requests is None:
                # First request in window
                self.store.set(key, 1, window_seconds)
                return True

            if requests >= max_requests:
                return False

            self.store.incr(key)
            return True
