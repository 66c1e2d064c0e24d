"""
Queue Consumer - worker loop for one pipeline stage.

Usage:
    python -m queues.consumer discovery
    python -m queues.consumer enrichment --once
    python -m queues.consumer assets --consumer assets-2

Each batch is limited by the queue's batch_budget_seconds; messages not
started within the budget are returned for retry. Outcomes are settled
after the batch (ack / stay pending for retry / dead-letter).

Exit codes:
    0: Stopped normally
    1: Error
"""
import logging
import socket
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from constants import QUEUE_ASSETS, QUEUE_DISCOVERY, QUEUE_ENRICHMENT
from queues.message_queue import MessageQueue, get_queue

logger = logging.getLogger(__name__)

QUEUE_NAMES = (QUEUE_DISCOVERY, QUEUE_ENRICHMENT, QUEUE_ASSETS)


@dataclass
class ConsumerStats:
    batches: int = 0
    received: int = 0
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {
            'batches': self.batches,
            'received': self.received,
            'acked': self.acked,
            'retried': self.retried,
            'dead_lettered': self.dead_lettered,
        }


def build_handler(queue_name: str, concurrency: int = 1):
    from queues.handlers import AssetHandler, DiscoveryHandler, EnrichmentHandler

    handlers = {
        QUEUE_DISCOVERY: DiscoveryHandler,
        QUEUE_ENRICHMENT: EnrichmentHandler,
        QUEUE_ASSETS: AssetHandler,
    }
    if queue_name not in handlers:
        raise ValueError(f"Unknown queue: {queue_name}")
    return handlers[queue_name](concurrency=concurrency)


def default_consumer_name(queue_name: str) -> str:
    return f"{queue_name}-{socket.gethostname()}"


def run_batch(queue: MessageQueue, handler, consumer: str, block_ms: Optional[int] = None, stats: Optional[ConsumerStats] = None) -> ConsumerStats:
    """Receive, handle and settle one batch."""
    stats = stats or ConsumerStats()
    messages = queue.receive(consumer, block_ms=block_ms)
    if not messages:
        return stats

    budget = float(queue.settings.get('batch_budget_seconds', 0) or 0)
    deadline = time.time() + budget if budget > 0 else None

    handler.handle(messages, deadline=deadline)
    settled = queue.settle(messages)

    stats.batches += 1
    stats.received += len(messages)
    stats.acked += settled.acked
    stats.retried += settled.retried
    stats.dead_lettered += settled.dead_lettered
    stats.errors.extend(settled.errors)
    return stats


def run_consumer(
    queue_name: str,
    consumer: Optional[str] = None,
    max_batches: Optional[int] = None,
    block_ms: int = 5000,
    queue: Optional[MessageQueue] = None,
    handler=None,
) -> ConsumerStats:
    """
    Poll a queue until max_batches batches were handled (forever when None).

    An empty poll does not count as a batch.
    """
    queue = queue or get_queue(queue_name)
    handler = handler or build_handler(queue_name, int(queue.settings.get('concurrency', 1)))
    consumer = consumer or default_consumer_name(queue_name)
    stats = ConsumerStats()

    logger.info(f"Consumer {consumer} polling {queue.stream} (batch {queue.batch_size}, max retries {queue.max_retries})")
    try:
        while max_batches is None or stats.batches < max_batches:
            before = stats.batches
            run_batch(queue, handler, consumer, block_ms=block_ms, stats=stats)
            if max_batches is not None and stats.batches == before:
                # Nothing waiting; a bounded run stops here
                break
    except KeyboardInterrupt:
        logger.info(f"Consumer {consumer} interrupted")

    logger.info(f"Consumer {consumer} stopped: {stats.to_dict()}")
    return stats


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy').setLevel(logging.WARNING)

    import argparse
    parser = argparse.ArgumentParser(description='Enrichment queue consumer')
    parser.add_argument('queue', choices=QUEUE_NAMES, help='Queue stage to consume')
    parser.add_argument('--consumer', help='Consumer name within the group (default: <queue>-<hostname>)')
    parser.add_argument('--once', action='store_true', help='Handle at most one batch, then exit')
    parser.add_argument('--max-batches', type=int, help='Stop after this many batches')
    parser.add_argument('--block-ms', type=int, default=5000, help='Blocking read timeout')
    args = parser.parse_args()

    max_batches = 1 if args.once else args.max_batches
    try:
        stats = run_consumer(args.queue, consumer=args.consumer, max_batches=max_batches, block_ms=args.block_ms)
    except Exception as e:
        logger.exception(f"Consumer failed: {e}")
        sys.exit(1)

    print(f"\n{args.queue}: {stats.to_dict()}")
    sys.exit(0)


if __name__ == '__main__':
    main()
