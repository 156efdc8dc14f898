#!/usr/bin/env python3
"""
DriveHR job sync service entry point
"""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from flask import Flask, jsonify, request

from activity_log import ActivityLogger
from config import SYNC_VERSION, WEBHOOK_PATH, WebhookConfig, load_config
from database_manager import DatabaseManager, ListingStore, ListingStoreError
from payload_validator import PayloadValidator
from reconciliation import ReconciliationEngine
from webhook_handler import JobSyncWebhookHandler, register_webhook
from webhook_security import DatabaseCounterStore, MemoryCounterStore, RateLimiter, SignatureVerifier

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def build_handler(config: WebhookConfig, store: ListingStore, counter_store=None,
                  clock=time.time) -> JobSyncWebhookHandler:
    """Wire the webhook components once per process"""
    activity_log = ActivityLogger(config.debug)

    if counter_store is None:
        if config.rate_limit_backend == 'database' and isinstance(store, DatabaseManager):
            counter_store = DatabaseCounterStore(store, clock=clock)
        else:
            counter_store = MemoryCounterStore(clock=clock)

    return JobSyncWebhookHandler(
        config=config,
        rate_limiter=RateLimiter(counter_store, config.rate_limit_max_requests, config.rate_limit_window),
        verifier=SignatureVerifier(config.secret, config.max_timestamp_drift, clock=clock),
        validator=PayloadValidator(config.max_jobs_per_request),
        engine=ReconciliationEngine(store, activity_log=activity_log),
        activity_log=activity_log,
    )


def create_app(config: Optional[WebhookConfig] = None, store: Optional[ListingStore] = None,
               handler: Optional[JobSyncWebhookHandler] = None) -> Flask:
    if config is None:
        config = load_config()
    if store is None:
        store = DatabaseManager(config.database_url, config.db_path)
    if handler is None:
        handler = build_handler(config, store)

    app = Flask(__name__)
    app.config['DRIVEHR_CONFIG'] = config
    app.config['DRIVEHR_STORE'] = store
    start_time = time.time()

    register_webhook(app, handler)

    @app.route('/health', methods=['GET'])
    def health():
        check = config.health_check()
        check.update({
            'service': 'drivehr-job-sync',
            'version': SYNC_VERSION,
            'uptime_seconds': int(time.time() - start_time),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        })
        return jsonify(check), 200 if check['status'] != 'critical' else 503

    @app.route('/ping', methods=['GET'])
    def ping():
        return jsonify({
            "status": "ok",
            "message": "pong",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }), 200

    @app.route('/jobs', methods=['GET'])
    def list_jobs():
        limit = min(max(request.args.get('limit', 50, type=int), 1), MAX_PAGE_SIZE)
        offset = max(request.args.get('offset', 0, type=int), 0)
        try:
            listings = store.list_listings(limit=limit, offset=offset)
            total = store.count_listings()
        except ListingStoreError as e:
            logger.error(f"Listing query failed: {e}")
            return jsonify({'error': 'Internal server error'}), 500

        return jsonify({
            'jobs': [listing.to_dict() for listing in listings],
            'total': total,
            'limit': limit,
            'offset': offset,
        }), 200

    @app.route('/jobs/<job_id>', methods=['GET'])
    def get_job(job_id):
        try:
            listing = store.get_listing(job_id)
        except ListingStoreError as e:
            logger.error(f"Listing lookup failed for {job_id}: {e}")
            return jsonify({'error': 'Internal server error'}), 500

        if listing is None:
            return jsonify({'error': 'Job not found', 'job_id': job_id}), 404
        return jsonify(listing.to_dict()), 200

    return app


def main():
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    health = config.health_check()
    for issue in health['issues']:
        logger.warning(issue)

    app = create_app(config)
    logger.info(f"Starting DriveHR job sync on port {config.port}, webhook at {WEBHOOK_PATH}")
    app.run(host='0.0.0.0', port=config.port, debug=False, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
