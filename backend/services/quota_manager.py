"""
Quota Manager - daily call budget for metered providers

Counters live in the shared key-value store, one key per provider per UTC
day:

    quota:isbndb:2024-05-17  ->  12873

Keys expire an hour after the next UTC midnight, so a new day starts from
zero and unused budget never rolls over.

Two ceilings:
- hard ceiling (daily_limit): what the provider enforces upstream
- safety ceiling (daily_limit - safety_buffer): where routine work stops

Correctness rule: every ATTEMPTED call is recorded, whatever its outcome
(2xx, 4xx, 5xx, timeout). Upstream providers count attempts; recording
only successes undercounts real usage.

Storage errors fail closed: when the counter cannot be read, calls are
denied rather than risking an overrun.

Usage:
    quota = QuotaManager(get_redis(), 'isbndb')
    check = quota.check_quota(1, reserve=True)   # counts the attempt
    if not check.allowed:
        raise QuotaExceeded('isbndb', check.status.to_dict(), check.reason)
    call_provider()
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import redis

from constants import (
    BATCH_METADATA_MAX_KEYS,
    BULK_OPERATION_MAX_CALLS,
    CRON_QUOTA_MULTIPLIER,
    DAILY_LIMIT,
    QUOTA_KEY_PREFIX,
    SAFETY_BUFFER,
)
from errors import QuotaExceeded

logger = logging.getLogger(__name__)

# Counters outlive midnight by this much so late writers never recreate them
KEY_EXPIRY_GRACE_SECONDS = 3600

OPERATION_CRON = 'cron'
OPERATION_BULK = 'bulk'


@dataclass
class QuotaStatus:
    """Point-in-time view of one provider's daily budget."""
    provider: str
    limit: int
    used: int
    remaining: int
    buffer_remaining: int
    reset_at: str
    next_reset_in_hours: float
    can_proceed: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QuotaCheck:
    """Outcome of a quota check."""
    allowed: bool
    status: QuotaStatus
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'status': self.status.to_dict(),
            'reason': self.reason,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaManager:
    """Per-provider daily budget backed by atomic counters."""

    def __init__(
        self,
        client: redis.Redis,
        provider: str,
        daily_limit: int = DAILY_LIMIT,
        safety_buffer: int = SAFETY_BUFFER,
        clock: Callable[[], datetime] = _utc_now,
    ):
        if safety_buffer >= daily_limit:
            raise ValueError("safety_buffer must be smaller than daily_limit")
        self.client = client
        self.provider = provider
        self.daily_limit = daily_limit
        self.safety_buffer = safety_buffer
        self._clock = clock

    @classmethod
    def for_provider(cls, client: redis.Redis, provider: str) -> Optional['QuotaManager']:
        """
        Build a manager from pipeline.yaml provider settings.

        Returns:
            None when the provider has no daily_limit configured (unmetered)
        """
        from config import get_provider_settings

        settings = get_provider_settings(provider)
        if not settings.get('daily_limit'):
            return None
        return cls(
            client,
            provider,
            daily_limit=int(settings['daily_limit']),
            safety_buffer=int(settings.get('safety_buffer', SAFETY_BUFFER)),
        )

    # =========================================================================
    # Keys and clock
    # =========================================================================

    @property
    def effective_limit(self) -> int:
        return self.daily_limit - self.safety_buffer

    def _next_reset(self) -> datetime:
        now = self._clock()
        tomorrow = (now + timedelta(days=1)).date()
        return datetime(tomorrow.year, tomorrow.month, tomorrow.day, tzinfo=timezone.utc)

    def _key(self) -> str:
        return f"{QUOTA_KEY_PREFIX}:{self.provider}:{self._clock().date().isoformat()}"

    def _expire_at(self) -> int:
        return int(self._next_reset().timestamp()) + KEY_EXPIRY_GRACE_SECONDS

    # =========================================================================
    # Status
    # =========================================================================

    def get_usage(self) -> int:
        """
        Calls recorded today.

        Raises:
            redis.RedisError: storage unavailable
        """
        value = self.client.get(self._key())
        return int(value) if value else 0

    def _build_status(self, used: int) -> QuotaStatus:
        reset_at = self._next_reset()
        hours = (reset_at - self._clock()).total_seconds() / 3600
        buffer_remaining = max(0, self.effective_limit - used)
        return QuotaStatus(
            provider=self.provider,
            limit=self.daily_limit,
            used=used,
            remaining=max(0, self.daily_limit - used),
            buffer_remaining=buffer_remaining,
            reset_at=reset_at.isoformat(),
            next_reset_in_hours=round(hours, 2),
            can_proceed=buffer_remaining > 0,
        )

    def _closed_status(self) -> QuotaStatus:
        status = self._build_status(self.daily_limit)
        status.used = 0
        status.remaining = 0
        return status

    def get_quota_status(self) -> QuotaStatus:
        """Current status; a storage failure reports a closed budget."""
        try:
            return self._build_status(self.get_usage())
        except redis.RedisError as e:
            logger.error(f"Quota status unavailable for {self.provider}: {e}")
            return self._closed_status()

    # =========================================================================
    # Check / record
    # =========================================================================

    def check_quota(self, count: int = 1, reserve: bool = False) -> QuotaCheck:
        """
        Can `count` more calls be afforded under the safety ceiling?

        Args:
            count: Calls the caller is about to make
            reserve: Atomically claim the calls now. A reserved call counts
                     as recorded; do not call record_api_call for it again.

        Returns:
            QuotaCheck (allowed=False on storage errors)
        """
        if count <= 0:
            raise ValueError("count must be positive")

        try:
            if reserve:
                return self._reserve(count)
            used = self.get_usage()
        except redis.RedisError as e:
            logger.error(f"Quota check failed closed for {self.provider}: {e}")
            return QuotaCheck(False, self._closed_status(), f"quota storage unavailable: {e}")

        status = self._build_status(used)
        if used + count > self.effective_limit:
            return QuotaCheck(
                False,
                status,
                f"Request would exceed daily limit. Need {count} calls, "
                f"only {status.buffer_remaining} remaining",
            )
        return QuotaCheck(True, status)

    def _reserve(self, count: int) -> QuotaCheck:
        key = self._key()
        pipe = self.client.pipeline()
        pipe.incrby(key, count)
        pipe.expireat(key, self._expire_at())
        new_value = int(pipe.execute()[0])

        if new_value > self.effective_limit:
            self.client.decrby(key, count)
            status = self._build_status(new_value - count)
            return QuotaCheck(
                False,
                status,
                f"Reservation of {count} calls would exceed daily limit "
                f"({status.buffer_remaining} remaining)",
            )
        return QuotaCheck(True, self._build_status(new_value))

    def record_api_call(self, count: int = 1) -> Optional[int]:
        """
        Count attempted calls, unconditionally.

        Usage past the hard ceiling is kept and logged, never taken back:
        upstream counts those attempts too. Metered providers reserve
        through check_quota(reserve=True) instead, so this is for calls
        made outside the provider fetch path.

        Returns:
            Usage after recording, or None if the store was unreachable
        """
        if count <= 0:
            return self.get_usage()

        key = self._key()
        try:
            pipe = self.client.pipeline()
            pipe.incrby(key, count)
            pipe.expireat(key, self._expire_at())
            new_value = int(pipe.execute()[0])
        except redis.RedisError as e:
            logger.error(f"Failed to record {count} call(s) for {self.provider}: {e}")
            return None

        if new_value > self.daily_limit:
            logger.error(
                f"Quota hard ceiling passed for {self.provider}: "
                f"usage {new_value}/{self.daily_limit}"
            )
        return new_value

    def ensure_quota(self, count: int = 1, reserve: bool = False) -> QuotaStatus:
        """
        Hard stop for paid work.

        With reserve=True the calls are claimed atomically and count as
        recorded.

        Raises:
            QuotaExceeded: when check_quota denies
        """
        check = self.check_quota(count, reserve=reserve)
        if not check.allowed:
            logger.warning(f"{self.provider} hard stop: {check.reason}")
            raise QuotaExceeded(self.provider, check.status.to_dict(), check.reason)
        return check.status

    # =========================================================================
    # Operational rules
    # =========================================================================

    def should_allow_operation(self, operation: str, estimated_calls: int = 1) -> QuotaCheck:
        """
        check_quota plus per-operation rules.

        - cron: needs twice the estimate left in the buffer, so manual
          work always has budget
        - bulk: capped at BULK_OPERATION_MAX_CALLS per operation
        """
        result = self.check_quota(estimated_calls)
        if not result.allowed:
            return result

        if operation == OPERATION_CRON:
            needed = estimated_calls * CRON_QUOTA_MULTIPLIER
            if result.status.buffer_remaining < needed:
                return QuotaCheck(
                    False,
                    result.status,
                    f"Cron operation blocked: need {needed} buffer calls, "
                    f"only {result.status.buffer_remaining} remaining",
                )
        elif operation == OPERATION_BULK:
            if estimated_calls > BULK_OPERATION_MAX_CALLS:
                return QuotaCheck(
                    False,
                    result.status,
                    f"Bulk operation too large: {estimated_calls} calls requested, "
                    f"max {BULK_OPERATION_MAX_CALLS} allowed",
                )
        return result

    def get_safe_batch_size(self, max_batch_size: int = BATCH_METADATA_MAX_KEYS * 10) -> int:
        """
        Keys that can be fetched using at most half the remaining buffer.

        One batch call covers BATCH_METADATA_MAX_KEYS keys.
        """
        status = self.get_quota_status()
        conservative_calls = status.buffer_remaining // 2
        return min(max_batch_size, conservative_calls * BATCH_METADATA_MAX_KEYS)
