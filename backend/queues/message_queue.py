"""
Durable message queues on Redis Streams.

One stream and one consumer group per stage:

    queue:discovery    group discovery-workers    dead letters -> queue:discovery-dlq
    queue:enrichment   group enrichment-workers   dead letters -> queue:enrichment-dlq
    queue:assets       group assets-workers       dead letters -> queue:assets-dlq

Delivery is at-least-once:
- a received message stays pending until it is acked
- a message left pending longer than the visibility timeout is reclaimed
  (XAUTOCLAIM) by the next consumer that polls; that is the retry path
- once a message has been delivered max_retries times without an ack it
  is copied to the dead-letter stream with its last error, then acked

Usage:
    queue = get_queue('enrichment')
    queue.send({'isbns': [...], 'source': 'backfill', 'priority': 'normal'})

    messages = queue.receive('worker-1')
    for message in messages:
        try:
            handle(message.body)
            message.ack()
        except TransientNetworkError as e:
            message.retry(str(e))
    queue.settle(messages)
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import redis

from config import get_queue_settings
from constants import (
    BATCH_METADATA_MAX_KEYS,
    ENRICHMENT_MESSAGE_MAX_KEYS,
    PRIORITY_NORMAL,
    QUEUE_ASSETS,
    QUEUE_DISCOVERY,
    QUEUE_ENRICHMENT,
)

logger = logging.getLogger(__name__)

STREAM_PREFIX = 'queue:'

OUTCOME_ACK = 'ack'
OUTCOME_RETRY = 'retry'


@dataclass
class QueueMessage:
    """One delivery of a queued body."""
    id: str
    body: Dict[str, Any]
    queue: str
    delivery_count: int = 1
    outcome: Optional[str] = None
    error: Optional[str] = None

    def ack(self) -> None:
        self.outcome = OUTCOME_ACK

    def retry(self, error: Optional[str] = None) -> None:
        self.outcome = OUTCOME_RETRY
        self.error = error


@dataclass
class SettleResult:
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    errors: List[str] = field(default_factory=list)


def stream_name(queue_name: str) -> str:
    return f"{STREAM_PREFIX}{queue_name}"


class MessageQueue:

    def __init__(self, client: redis.Redis, name: str, settings: Optional[Dict[str, Any]] = None):
        self.client = client
        self.name = name
        self.settings = settings if settings is not None else get_queue_settings(name)
        self.stream = stream_name(name)
        self.group = f"{name}-workers"
        self.dead_letter_stream = stream_name(self.settings.get('dead_letter_queue') or f"{name}-dlq")
        self._group_ready = False

    @property
    def batch_size(self) -> int:
        return int(self.settings.get('batch_size', 10))

    @property
    def max_retries(self) -> int:
        return int(self.settings.get('max_retries', 3))

    @property
    def visibility_timeout_ms(self) -> int:
        return int(self.settings.get('visibility_timeout_seconds', 300)) * 1000

    def ensure_group(self) -> None:
        """Create the consumer group (and stream) once."""
        if self._group_ready:
            return
        try:
            self.client.xgroup_create(self.stream, self.group, id='0', mkstream=True)
            logger.info(f"Created consumer group {self.group} on {self.stream}")
        except redis.ResponseError as e:
            if 'BUSYGROUP' not in str(e):
                raise
        self._group_ready = True

    # =========================================================================
    # Producer
    # =========================================================================

    def send(self, body: Dict[str, Any]) -> str:
        message_id = self.client.xadd(self.stream, {'body': json.dumps(body, default=str)})
        logger.debug(f"Queued {self.name} message {message_id}")
        return message_id

    def send_batch(self, bodies: List[Dict[str, Any]]) -> List[str]:
        if not bodies:
            return []
        pipe = self.client.pipeline()
        for body in bodies:
            pipe.xadd(self.stream, {'body': json.dumps(body, default=str)})
        ids = pipe.execute()
        logger.info(f"Queued {len(ids)} {self.name} messages")
        return ids

    # =========================================================================
    # Consumer
    # =========================================================================

    def _decode(self, entries, delivery_counts: Dict[str, int]) -> List[QueueMessage]:
        messages = []
        for message_id, fields in entries or []:
            if fields is None:
                # Entry deleted while pending
                continue
            try:
                body = json.loads(fields.get('body') or '{}')
            except ValueError:
                body = {'_raw': fields.get('body')}
            messages.append(QueueMessage(
                id=message_id,
                body=body,
                queue=self.name,
                delivery_count=delivery_counts.get(message_id, 1),
            ))
        return messages

    def _delivery_counts(self, ids: List[str]) -> Dict[str, int]:
        if not ids:
            return {}
        pending = self.client.xpending_range(
            self.stream, self.group, min=min(ids), max=max(ids), count=len(ids) * 2
        )
        return {p['message_id']: int(p['times_delivered']) for p in pending}

    def receive(self, consumer: str, count: Optional[int] = None, block_ms: Optional[int] = None) -> List[QueueMessage]:
        """
        Up to `count` messages: expired pending ones first, then new ones.

        Reclaimed messages past their retry budget are dead-lettered here
        and not returned (their worker died before settling them).
        """
        self.ensure_group()
        count = count or self.batch_size

        reclaimed = self.client.xautoclaim(
            self.stream, self.group, consumer,
            min_idle_time=self.visibility_timeout_ms, start_id='0-0', count=count,
        )
        claimed_entries = reclaimed[1] if reclaimed else []
        claimed = self._decode(claimed_entries, self._delivery_counts([e[0] for e in claimed_entries]))

        messages: List[QueueMessage] = []
        for message in claimed:
            if message.delivery_count > self.max_retries:
                self.dead_letter(message, message.error or 'visibility timeout exceeded on every delivery')
            else:
                messages.append(message)

        remaining = count - len(messages)
        if remaining > 0:
            response = self.client.xreadgroup(
                self.group, consumer, {self.stream: '>'}, count=remaining, block=block_ms,
            )
            for _stream, entries in response or []:
                messages.extend(self._decode(entries, {}))

        if messages:
            logger.info(f"Received {len(messages)} {self.name} messages ({len(claimed)} reclaimed)")
        return messages

    def ack(self, message: QueueMessage) -> None:
        self.client.xack(self.stream, self.group, message.id)
        self.client.xdel(self.stream, message.id)

    def dead_letter(self, message: QueueMessage, error: Optional[str]) -> None:
        self.client.xadd(self.dead_letter_stream, {
            'body': json.dumps(message.body, default=str),
            'source_queue': self.name,
            'original_id': message.id,
            'delivery_count': str(message.delivery_count),
            'error': error or '',
        })
        self.ack(message)
        logger.error(
            f"{self.name} message {message.id} dead-lettered after "
            f"{message.delivery_count} deliveries: {error}"
        )

    def settle(self, messages: List[QueueMessage]) -> SettleResult:
        """
        Apply each message's outcome.

        No outcome counts as ack. A retried message stays pending for
        redelivery after the visibility timeout, unless this was its last
        allowed delivery.
        """
        result = SettleResult()
        for message in messages:
            if message.outcome == OUTCOME_RETRY:
                if message.error:
                    result.errors.append(message.error)
                if message.delivery_count >= self.max_retries:
                    self.dead_letter(message, message.error)
                    result.dead_lettered += 1
                else:
                    result.retried += 1
                    logger.warning(
                        f"{self.name} message {message.id} will be retried "
                        f"(delivery {message.delivery_count}/{self.max_retries}): {message.error}"
                    )
            else:
                self.ack(message)
                result.acked += 1
        return result

    def depth(self) -> Dict[str, int]:
        self.ensure_group()
        summary = self.client.xpending(self.stream, self.group)
        return {
            'length': int(self.client.xlen(self.stream)),
            'pending': int(summary.get('pending', 0)) if summary else 0,
            'dead_letters': int(self.client.xlen(self.dead_letter_stream)),
        }


# =============================================================================
# Queue handles
# =============================================================================

def get_queue(name: str, client: Optional[redis.Redis] = None) -> MessageQueue:
    if client is None:
        from services.kv_store import get_redis
        client = get_redis()
    return MessageQueue(client, name)


def chunked(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def enqueue_discovery(body: Dict[str, Any], queue: Optional[MessageQueue] = None) -> str:
    return (queue or get_queue(QUEUE_DISCOVERY)).send(body)


def enqueue_enrichment(
    isbns: List[str],
    source: str,
    priority: str = PRIORITY_NORMAL,
    job_id: Optional[str] = None,
    queue: Optional[MessageQueue] = None,
) -> int:
    """
    Queue keys for enrichment, at most ENRICHMENT_MESSAGE_MAX_KEYS per message.

    Returns:
        number of messages sent
    """
    if not isbns:
        return 0
    size = min(ENRICHMENT_MESSAGE_MAX_KEYS, BATCH_METADATA_MAX_KEYS)
    bodies = [
        {'isbns': chunk, 'source': source, 'priority': priority, 'job_id': job_id}
        for chunk in chunked(list(isbns), size)
    ]
    (queue or get_queue(QUEUE_ENRICHMENT)).send_batch(bodies)
    return len(bodies)


def enqueue_asset(
    isbn: str,
    source_url: Optional[str] = None,
    priority: str = PRIORITY_NORMAL,
    queue: Optional[MessageQueue] = None,
) -> str:
    return (queue or get_queue(QUEUE_ASSETS)).send({
        'isbn': isbn,
        'source_url': source_url,
        'priority': priority,
    })
