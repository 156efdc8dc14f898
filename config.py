#!/usr/bin/env python3
"""
Environment configuration for the DriveHR job sync webhook
"""
import os
import logging
from dataclasses import dataclass
from typing import Dict, Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

WEBHOOK_PATH = '/webhook/drivehr-sync'
SYNC_SOURCE = 'drivehr-netlify-sync'
SYNC_VERSION = '1.6.0'
LISTING_SOURCE = 'drivehr'

DEFAULT_MAX_JOBS_PER_REQUEST = 100
DEFAULT_RATE_LIMIT_MAX_REQUESTS = 10
DEFAULT_RATE_LIMIT_WINDOW = 60
DEFAULT_MAX_TIMESTAMP_DRIFT = 300  # 5 minutes

_TRUTHY = ('1', 'true', 'yes', 'on')


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value.strip())
    except ValueError:
        logger.warning(f"Invalid integer for {name}: {value!r}, using default {default}")
        return default


@dataclass(frozen=True)
class WebhookConfig:
    secret: str = ''
    enabled: bool = False
    max_jobs_per_request: int = DEFAULT_MAX_JOBS_PER_REQUEST
    rate_limit_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS
    rate_limit_window: int = DEFAULT_RATE_LIMIT_WINDOW
    max_timestamp_drift: int = DEFAULT_MAX_TIMESTAMP_DRIFT
    debug: bool = False
    rate_limit_backend: str = 'memory'
    database_url: str = ''
    db_path: str = 'drivehr_jobs.db'
    port: int = 8000
    log_level: str = 'INFO'

    @property
    def secret_configured(self) -> bool:
        return bool(self.secret)

    def health_check(self) -> Dict[str, Any]:
        """Summarize whether the webhook can accept syncs"""
        issues = []
        status = 'good'

        if not self.secret_configured:
            issues.append('DRIVEHR_WEBHOOK_SECRET is not set; every request will be rejected')
            status = 'critical'

        if not self.enabled:
            issues.append('DRIVEHR_WEBHOOK_ENABLED is off; the endpoint answers 503')
            if status == 'good':
                status = 'recommended'

        return {
            'label': 'DriveHR Webhook Configuration',
            'status': status,
            'issues': issues,
            'endpoint': WEBHOOK_PATH,
        }


def load_config() -> WebhookConfig:
    """Build the webhook configuration from .env and the process environment"""
    load_dotenv()

    backend = os.getenv('DRIVEHR_RATE_LIMIT_BACKEND', 'memory').strip().lower()
    if backend not in ('memory', 'database'):
        logger.warning(f"Unknown rate limit backend {backend!r}, falling back to memory")
        backend = 'memory'

    config = WebhookConfig(
        secret=os.getenv('DRIVEHR_WEBHOOK_SECRET', ''),
        enabled=_env_bool('DRIVEHR_WEBHOOK_ENABLED'),
        max_jobs_per_request=_env_int('DRIVEHR_MAX_JOBS_PER_REQUEST', DEFAULT_MAX_JOBS_PER_REQUEST),
        rate_limit_max_requests=_env_int('DRIVEHR_RATE_LIMIT_MAX_REQUESTS', DEFAULT_RATE_LIMIT_MAX_REQUESTS),
        rate_limit_window=_env_int('DRIVEHR_RATE_LIMIT_WINDOW', DEFAULT_RATE_LIMIT_WINDOW),
        max_timestamp_drift=_env_int('DRIVEHR_MAX_TIMESTAMP_DRIFT', DEFAULT_MAX_TIMESTAMP_DRIFT),
        debug=_env_bool('DRIVEHR_WEBHOOK_DEBUG'),
        rate_limit_backend=backend,
        database_url=os.getenv('DATABASE_URL', ''),
        db_path=os.getenv('DRIVEHR_DB_PATH', 'drivehr_jobs.db'),
        port=_env_int('PORT', 8000),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )

    if not config.secret_configured:
        logger.warning("SECURITY: DRIVEHR_WEBHOOK_SECRET not set - all webhook requests will be rejected")

    return config
