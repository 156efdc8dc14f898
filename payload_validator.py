#!/usr/bin/env python3
"""
Structural validation of decoded DriveHR webhook payloads
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from config import DEFAULT_MAX_JOBS_PER_REQUEST

JOBS_KEY = 'jobs'
EXPECTED_SHAPE = {JOBS_KEY: 'array'}


@dataclass
class ValidationOutcome:
    valid: bool
    reason: str = 'Valid'
    expected: Dict[str, str] = field(default_factory=lambda: dict(EXPECTED_SHAPE))

    def __bool__(self) -> bool:
        return self.valid


def _has_value(item: Dict[str, Any], key: str) -> bool:
    return key in item and item[key] is not None


def validate_payload(decoded: Any, max_jobs: int = DEFAULT_MAX_JOBS_PER_REQUEST) -> ValidationOutcome:
    """Check the batch envelope before any listing is touched.

    Only the first job is inspected for id/title; every job is checked
    again individually during reconciliation, where a bad item is reported
    without failing the batch.
    """
    if not isinstance(decoded, dict):
        return ValidationOutcome(False, "Payload must be a JSON object")

    jobs = decoded.get(JOBS_KEY)
    if not isinstance(jobs, list):
        return ValidationOutcome(False, f"Payload must contain a '{JOBS_KEY}' array")

    if len(jobs) > max_jobs:
        return ValidationOutcome(False, f"Too many jobs: {len(jobs)} exceeds limit of {max_jobs}")

    if jobs:
        first_job = jobs[0]
        if not isinstance(first_job, dict) or not (_has_value(first_job, 'id') and _has_value(first_job, 'title')):
            return ValidationOutcome(False, "First job is missing required fields: id and title")

    return ValidationOutcome(True)


class PayloadValidator:
    def __init__(self, max_jobs: int = DEFAULT_MAX_JOBS_PER_REQUEST):
        self.max_jobs = max_jobs

    def validate(self, decoded: Any, max_jobs: Optional[int] = None) -> ValidationOutcome:
        return validate_payload(decoded, self.max_jobs if max_jobs is None else max_jobs)
