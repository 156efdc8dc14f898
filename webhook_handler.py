#!/usr/bin/env python3
"""
DriveHR job sync webhook endpoint.

Every request to the webhook path walks the same checks in order and stops
at the first failure:

    enabled -> POST only -> rate limit -> signature -> JSON -> payload shape -> reconcile

Requests to any other path are left to the host Flask application.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlparse
import logging

from flask import Flask, current_app, request

from activity_log import ActivityLogger
from config import WEBHOOK_PATH, WebhookConfig
from payload_validator import JOBS_KEY, PayloadValidator
from reconciliation import ReconciliationEngine, ReconciliationError
from webhook_security import RateLimiter, SignatureVerifier, get_client_ip

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Webhook-Signature'
TIMESTAMP_HEADER = 'X-Webhook-Timestamp'

SECURITY_HEADERS = {
    'Content-Type': 'application/json; charset=utf-8',
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'X-Robots-Tag': 'noindex, nofollow, noarchive, nosnippet',
}

NO_CACHE_HEADERS = {
    'Cache-Control': 'no-cache, no-store, must-revalidate',
    'Pragma': 'no-cache',
    'Expires': '0',
}


def current_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class WebhookRequest:
    method: str
    path: str
    headers: Mapping[str, str]
    body: bytes = b''
    remote_addr: Optional[str] = None


@dataclass
class WebhookResponse:
    status: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(self.body, ensure_ascii=False)


def build_response(status: int, data: Dict[str, Any]) -> WebhookResponse:
    """Attach security headers, and cache-busting headers on errors"""
    body = dict(data)
    if 'timestamp' not in body:
        body['timestamp'] = current_timestamp()

    headers = dict(SECURITY_HEADERS)
    if status >= 400:
        headers.update(NO_CACHE_HEADERS)

    return WebhookResponse(status=status, body=body, headers=headers)


class JobSyncWebhookHandler:
    def __init__(self, config: WebhookConfig, rate_limiter: RateLimiter, verifier: SignatureVerifier,
                 validator: PayloadValidator, engine: ReconciliationEngine,
                 on_webhook_start: Optional[Callable[[], None]] = None,
                 on_webhook_end: Optional[Callable[[Dict[str, Any]], None]] = None,
                 activity_log: Optional[ActivityLogger] = None):
        self.config = config
        self.rate_limiter = rate_limiter
        self.verifier = verifier
        self.validator = validator
        self.engine = engine
        self.on_webhook_start = on_webhook_start
        self.on_webhook_end = on_webhook_end
        self.log_webhook_activity = activity_log or ActivityLogger(config.debug)

    @staticmethod
    def matches(path: str) -> bool:
        return urlparse(path).path == WEBHOOK_PATH

    def handle(self, webhook_request: WebhookRequest) -> Optional[WebhookResponse]:
        """Run the webhook checks; None means the request is not ours"""
        if not self.matches(webhook_request.path):
            return None

        if self.on_webhook_start:
            self.on_webhook_start()

        try:
            return self._handle(webhook_request)
        except Exception as e:
            logger.exception(f"Unhandled webhook error: {e}")
            if self.on_webhook_end:
                self.on_webhook_end({'error': str(e)})
            return build_response(500, {'error': 'Internal server error'})

    def _handle(self, webhook_request: WebhookRequest) -> WebhookResponse:
        if not self.config.enabled:
            self.log_webhook_activity('Webhook disabled', {'uri': WEBHOOK_PATH})
            return build_response(503, {'error': 'Service temporarily unavailable'})

        method = webhook_request.method.upper()
        if method != 'POST':
            self.log_webhook_activity('Invalid method', {'method': method})
            return build_response(405, {
                'error': 'Method not allowed',
                'allowed_methods': ['POST'],
            })

        client_ip = get_client_ip(webhook_request.headers, webhook_request.remote_addr)
        window = self.config.rate_limit_window
        if not self.rate_limiter.allow(client_ip, self.config.rate_limit_max_requests, window):
            self.log_webhook_activity('Rate limit exceeded', {'ip': client_ip})
            return build_response(429, {
                'error': 'Rate limit exceeded',
                'retry_after': window,
            })

        headers = webhook_request.headers
        if not self.verifier.verify(webhook_request.body, headers.get(SIGNATURE_HEADER),
                                    headers.get(TIMESTAMP_HEADER)):
            # The reason stays in the log; the caller only learns "unauthorized"
            self.log_webhook_activity('Invalid signature', {'ip': client_ip})
            return build_response(401, {'error': 'Unauthorized - Invalid signature'})

        try:
            data = json.loads(webhook_request.body.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            self.log_webhook_activity('Invalid JSON', {'error': str(e)})
            return build_response(400, {'error': 'Invalid JSON format'})

        outcome = self.validator.validate(data, self.config.max_jobs_per_request)
        if not outcome:
            data_keys = list(data.keys()) if isinstance(data, dict) else []
            self.log_webhook_activity('Invalid data structure', {'reason': outcome.reason, 'data_keys': data_keys})
            return build_response(400, {
                'error': 'Invalid webhook data structure',
                'expected': outcome.expected,
            })

        try:
            result = self.engine.reconcile(data[JOBS_KEY])
        except ReconciliationError as e:
            logger.error(f"Job sync failed: {e}")
            self.log_webhook_activity('Processing failed', {'error': str(e)})
            if self.on_webhook_end:
                self.on_webhook_end({'error': str(e)})
            return build_response(500, {'error': 'Internal server error'})

        payload = result.to_dict()
        self.log_webhook_activity('Jobs processed successfully', payload)
        if self.on_webhook_end:
            self.on_webhook_end(payload)
        return build_response(200, payload)


def to_flask_response(webhook_response: WebhookResponse):
    return current_app.response_class(
        webhook_response.to_json(),
        status=webhook_response.status,
        headers=webhook_response.headers,
    )


def register_webhook(app: Flask, handler: JobSyncWebhookHandler) -> None:
    """Serve the webhook path from a before_request hook of the host app"""

    @app.before_request
    def drivehr_webhook():
        if not handler.matches(request.path):
            return None

        webhook_request = WebhookRequest(
            method=request.method,
            path=request.path,
            headers=request.headers,
            body=request.get_data(cache=True),
            remote_addr=request.remote_addr,
        )
        webhook_response = handler.handle(webhook_request)
        if webhook_response is None:
            return None
        return to_flask_response(webhook_response)
