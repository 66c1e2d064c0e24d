"""
EnrichmentUnit Model - one schedulable slice of backfill work

Each unit is either:
- a period unit (year, month) seeded once for the full backfill range
- an ISBN batch unit (explicit list of natural keys)

State machine:
    pending -> processing -> completed
                          -> failed   (retry budget exhausted / data conflict)
                          -> retry    -> processing (after backoff)

Invariant (enforced by CHECK constraints and by the transition SQL in
services/backfill_scheduler.py):
    completed_at IS NULL  <=>  status NOT IN ('completed', 'failed')
    completed_at IS NULL OR completed_at >= started_at
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.dialects.postgresql import ARRAY, JSONB

from constants import (
    TERMINAL_UNIT_STATUSES,
    UNIT_STATUS_COMPLETED,
    UNIT_STATUS_FAILED,
    UNIT_STATUS_PENDING,
    UNIT_STATUS_PROCESSING,
    UNIT_STATUS_RETRY,
)
from models.database import db

UNIT_TYPE_PERIOD = 'period'
UNIT_TYPE_ISBN_BATCH = 'isbn_batch'

ALLOWED_TRANSITIONS = {
    UNIT_STATUS_PENDING: {UNIT_STATUS_PROCESSING},
    UNIT_STATUS_RETRY: {UNIT_STATUS_PROCESSING},
    # processing -> processing is a stale re-claim
    UNIT_STATUS_PROCESSING: {
        UNIT_STATUS_PROCESSING,
        UNIT_STATUS_COMPLETED,
        UNIT_STATUS_FAILED,
        UNIT_STATUS_RETRY,
    },
    # force_retry re-opens permanently failed units
    UNIT_STATUS_FAILED: {UNIT_STATUS_PROCESSING},
    UNIT_STATUS_COMPLETED: set(),
}


class InvalidTransition(Exception):
    """Raised when a unit is moved along an edge the state machine lacks."""
    pass


def status_after_failure(retry_count: int, max_retries: int) -> str:
    """
    Status for a unit whose processing just failed.

    retry_count is the value before this failure is counted.
    """
    if retry_count + 1 < max_retries:
        return UNIT_STATUS_RETRY
    return UNIT_STATUS_FAILED


def check_transition(current: str, target: str) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move unit from {current} to {target}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EnrichmentUnit(db.Model):
    __tablename__ = 'enrichment_units'

    id = db.Column(db.Integer, primary_key=True)

    # period | isbn_batch
    unit_type = db.Column(db.Text, nullable=False, default=UNIT_TYPE_PERIOD)
    year = db.Column(db.Integer)
    month = db.Column(db.Integer)
    isbns = db.Column(ARRAY(db.Text))

    # pending | processing | completed | failed | retry
    status = db.Column(db.Text, nullable=False, default=UNIT_STATUS_PENDING, index=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_retry_at = db.Column(db.DateTime(timezone=True))

    # Timing: claimed by the scheduler, started when a worker picks it up
    claimed_at = db.Column(db.DateTime(timezone=True))
    started_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))

    # Run configuration
    job_id = db.Column(db.String(36), index=True)
    prompt_variant = db.Column(db.Text)
    batch_size = db.Column(db.Integer)

    # Per-run metrics
    items_generated = db.Column(db.Integer, nullable=False, default=0)
    items_known = db.Column(db.Integer, nullable=False, default=0)  # already in the catalog
    items_resolved = db.Column(db.Integer, nullable=False, default=0)
    items_queued = db.Column(db.Integer, nullable=False, default=0)
    provider_calls = db.Column(JSONB, default=dict)  # {"gemini": 1, "isbndb": 12}

    # Error tracking (queryable without reading logs)
    error_message = db.Column(db.Text)

    created_at = db.Column(db.DateTime(timezone=True), default=_utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'retry')",
            name='ck_enrichment_units_status'
        ),
        db.CheckConstraint(
            "completed_at IS NULL OR completed_at >= started_at",
            name='ck_enrichment_units_completed_after_started'
        ),
        db.CheckConstraint(
            "(completed_at IS NOT NULL) = (status IN ('completed', 'failed'))",
            name='ck_enrichment_units_completed_iff_terminal'
        ),
        db.CheckConstraint(
            "(unit_type = 'period' AND year IS NOT NULL AND month BETWEEN 1 AND 12) "
            "OR (unit_type = 'isbn_batch' AND isbns IS NOT NULL)",
            name='ck_enrichment_units_shape'
        ),
        db.Index(
            'uq_enrichment_units_period', 'year', 'month',
            unique=True, postgresql_where=db.text("unit_type = 'period'")
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_UNIT_STATUSES

    @property
    def resolution_rate(self) -> Optional[float]:
        attempted = (self.items_generated or 0) - (self.items_known or 0)
        if attempted <= 0:
            return None
        return round(100.0 * (self.items_resolved or 0) / attempted, 1)

    def to_dict(self):
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'unit_type': self.unit_type,
            'year': self.year,
            'month': self.month,
            'isbns': list(self.isbns or []),
            'status': self.status,
            'retry_count': self.retry_count,
            'job_id': self.job_id,
            'prompt_variant': self.prompt_variant,
            'claimed_at': self.claimed_at.isoformat() if self.claimed_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'items_generated': self.items_generated,
            'items_known': self.items_known,
            'items_resolved': self.items_resolved,
            'items_queued': self.items_queued,
            'resolution_rate': self.resolution_rate,
            'provider_calls': self.provider_calls,
            'error_message': self.error_message,
        }
