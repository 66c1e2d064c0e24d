"""
Job Status - progress of one backfill job, kept in the key-value store.

    backfill:job:{job_id}  ->  JSON, expires after 7 days

States: queued -> processing -> enriching -> complete | failed

Any worker can read or advance a job; nothing is held in process memory.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from constants import JOB_STATUS_PREFIX, JOB_STATUS_TTL_SECONDS

logger = logging.getLogger(__name__)

JOB_QUEUED = 'queued'
JOB_PROCESSING = 'processing'
JOB_ENRICHING = 'enriching'
JOB_COMPLETE = 'complete'
JOB_FAILED = 'failed'

JOB_STATES = (JOB_QUEUED, JOB_PROCESSING, JOB_ENRICHING, JOB_COMPLETE, JOB_FAILED)
TERMINAL_JOB_STATES = (JOB_COMPLETE, JOB_FAILED)


def new_job_id() -> str:
    return str(uuid.uuid4())


def job_key(job_id: str) -> str:
    return f"{JOB_STATUS_PREFIX}{job_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatusStore:
    """Read/write job status documents."""

    def __init__(self, client=None, ttl_seconds: int = JOB_STATUS_TTL_SECONDS):
        if client is None:
            from services.kv_store import get_redis
            client = get_redis()
        self.client = client
        self.ttl_seconds = ttl_seconds

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = self.client.get(job_key(job_id))
        if raw is None:
            return None
        return json.loads(raw)

    def _write(self, job_id: str, status: Dict[str, Any]) -> Dict[str, Any]:
        self.client.set(job_key(job_id), json.dumps(status, default=str), ex=self.ttl_seconds)
        return status

    def create(self, job_id: str, unit: Dict[str, Any], progress: str = 'Queued') -> Dict[str, Any]:
        return self._write(job_id, {
            'job_id': job_id,
            'status': JOB_QUEUED,
            'unit': unit,
            'progress': progress,
            'stats': {},
            'created_at': _now(),
            'started_at': None,
            'completed_at': None,
            'duration_ms': None,
            'error': None,
        })

    def update(
        self,
        job_id: str,
        status: str,
        progress: Optional[str] = None,
        stats: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Advance a job.

        Unknown jobs are recreated from the update (the original may have
        expired while a slow unit was retried).

        Raises:
            ValueError: unknown state
        """
        if status not in JOB_STATES:
            raise ValueError(f"Unknown job state: {status}")

        current = self.get(job_id) or {'job_id': job_id, 'stats': {}, 'created_at': _now()}
        if current.get('status') in TERMINAL_JOB_STATES and status not in TERMINAL_JOB_STATES:
            logger.debug(f"Job {job_id} reopened from {current['status']} to {status}")

        current['status'] = status
        if progress is not None:
            current['progress'] = progress
        if stats:
            current['stats'] = {**(current.get('stats') or {}), **stats}
        if error is not None:
            current['error'] = error

        if status == JOB_PROCESSING and not current.get('started_at'):
            current['started_at'] = _now()
        if status in TERMINAL_JOB_STATES:
            current['completed_at'] = _now()
            started = current.get('started_at') or current.get('created_at')
            if started:
                elapsed = datetime.now(timezone.utc) - datetime.fromisoformat(started)
                current['duration_ms'] = int(elapsed.total_seconds() * 1000)

        return self._write(job_id, current)


# Global instance (lazy init)
_store: Optional[JobStatusStore] = None


def get_job_store() -> JobStatusStore:
    global _store
    if _store is None:
        _store = JobStatusStore()
    return _store


def job_status(job_id: str) -> Optional[Dict[str, Any]]:
    """{status, progress, stats, ...} for a job, or None when unknown/expired."""
    return get_job_store().get(job_id)
