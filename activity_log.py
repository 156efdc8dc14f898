"""
Debug-gated webhook activity log
"""
import json
import logging
from typing import Any, Optional

logger = logging.getLogger('drivehr.webhook')


class ActivityLogger:
    """Writes '[DriveHR Webhook] message | Data: {...}' lines when enabled.

    Troubleshooting aid only; nothing reads these lines back.
    """

    def __init__(self, enabled: bool = False):
        self.enabled = enabled

    def __call__(self, message: str, data: Optional[Any] = None) -> None:
        if not self.enabled:
            return

        entry = f"[DriveHR Webhook] {message}"
        if data is not None:
            entry += ' | Data: ' + json.dumps(data, ensure_ascii=False, default=str)
        logger.info(entry)
