"""
Tests for the Redis Streams message queues and the consumer loop.

The Redis client is a MagicMock; assertions are on the stream commands
issued.

Run with: pytest tests/test_message_queue.py -v
"""
import json
from unittest.mock import MagicMock

import pytest
import redis

from queues import consumer
from queues.message_queue import (
    OUTCOME_RETRY,
    MessageQueue,
    QueueMessage,
    SettleResult,
    chunked,
    enqueue_asset,
    enqueue_discovery,
    enqueue_enrichment,
    stream_name,
)

SETTINGS = {
    'batch_size': 10,
    'max_retries': 3,
    'visibility_timeout_seconds': 300,
    'dead_letter_queue': 'enrichment-dlq',
    'batch_budget_seconds': 0,
}


def make_queue(client=None, name='enrichment', **settings):
    client = client or MagicMock()
    client.xautoclaim.return_value = ['0-0', [], []]
    client.xreadgroup.return_value = []
    client.xpending_range.return_value = []
    return MessageQueue(client, name, settings={**SETTINGS, **settings})


def entry(message_id, body):
    return (message_id, {'body': json.dumps(body)})


# =============================================================================
# Producer
# =============================================================================

class TestProducer:

    def test_names(self):
        queue = make_queue()
        assert queue.stream == 'queue:enrichment'
        assert queue.group == 'enrichment-workers'
        assert queue.dead_letter_stream == 'queue:enrichment-dlq'
        assert stream_name('assets') == 'queue:assets'

    def test_send(self):
        queue = make_queue()
        queue.client.xadd.return_value = '1-0'
        assert queue.send({'isbns': ['9780441478125']}) == '1-0'

        stream, fields = queue.client.xadd.call_args.args
        assert stream == 'queue:enrichment'
        assert json.loads(fields['body']) == {'isbns': ['9780441478125']}

    def test_send_batch_uses_pipeline(self):
        queue = make_queue()
        pipe = queue.client.pipeline.return_value
        pipe.execute.return_value = ['1-0', '2-0']
        assert queue.send_batch([{'a': 1}, {'b': 2}]) == ['1-0', '2-0']
        assert pipe.xadd.call_count == 2

    def test_send_batch_empty(self):
        queue = make_queue()
        assert queue.send_batch([]) == []
        queue.client.pipeline.assert_not_called()

    def test_enqueue_enrichment_chunks_at_100(self):
        queue = MagicMock()
        keys = [f"978{n:010d}" for n in range(250)]
        assert enqueue_enrichment(keys, source='backfill-2019-05', priority='low', job_id='j', queue=queue) == 3

        bodies = queue.send_batch.call_args.args[0]
        assert [len(b['isbns']) for b in bodies] == [100, 100, 50]
        assert all(b['source'] == 'backfill-2019-05' and b['priority'] == 'low' and b['job_id'] == 'j'
                   for b in bodies)

    def test_enqueue_enrichment_nothing(self):
        queue = MagicMock()
        assert enqueue_enrichment([], source='x', queue=queue) == 0
        queue.send_batch.assert_not_called()

    def test_enqueue_asset_and_discovery(self):
        queue = MagicMock()
        enqueue_asset('9780441478125', 'https://images.example.com/c.jpg', priority='high', queue=queue)
        assert queue.send.call_args.args[0] == {
            'isbn': '9780441478125', 'source_url': 'https://images.example.com/c.jpg', 'priority': 'high',
        }
        enqueue_discovery({'unit_id': 1}, queue=queue)
        assert queue.send.call_args.args[0] == {'unit_id': 1}

    def test_chunked(self):
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]


# =============================================================================
# Consumer side
# =============================================================================

class TestConsumerGroup:

    def test_group_created_once(self):
        queue = make_queue()
        queue.ensure_group()
        queue.ensure_group()
        queue.client.xgroup_create.assert_called_once_with(
            'queue:enrichment', 'enrichment-workers', id='0', mkstream=True
        )

    def test_existing_group_ok(self):
        queue = make_queue()
        queue.client.xgroup_create.side_effect = redis.ResponseError('BUSYGROUP Consumer Group name already exists')
        queue.ensure_group()

    def test_other_errors_raise(self):
        queue = make_queue()
        queue.client.xgroup_create.side_effect = redis.ResponseError('WRONGTYPE')
        with pytest.raises(redis.ResponseError):
            queue.ensure_group()


class TestReceive:

    def test_new_messages(self):
        queue = make_queue()
        queue.client.xreadgroup.return_value = [
            ['queue:enrichment', [entry('5-0', {'isbns': ['9780441478125']})]],
        ]
        messages = queue.receive('worker-1', block_ms=100)

        assert [m.id for m in messages] == ['5-0']
        assert messages[0].body == {'isbns': ['9780441478125']}
        assert messages[0].delivery_count == 1
        queue.client.xreadgroup.assert_called_once_with(
            'enrichment-workers', 'worker-1', {'queue:enrichment': '>'}, count=10, block=100,
        )

    def test_expired_pending_reclaimed_first(self):
        queue = make_queue()
        queue.client.xautoclaim.return_value = ['0-0', [entry('1-0', {'n': 1})], []]
        queue.client.xpending_range.return_value = [{'message_id': '1-0', 'times_delivered': 2}]
        queue.client.xreadgroup.return_value = [['queue:enrichment', [entry('6-0', {'n': 6})]]]
        messages = queue.receive('worker-1', count=2)

        assert [(m.id, m.delivery_count) for m in messages] == [('1-0', 2), ('6-0', 1)]
        assert queue.client.xautoclaim.call_args.kwargs['min_idle_time'] == 300_000
        assert queue.client.xreadgroup.call_args.kwargs['count'] == 1

    def test_reclaimed_past_budget_dead_lettered(self):
        queue = make_queue()
        queue.client.xautoclaim.return_value = ['0-0', [entry('1-0', {'n': 1})], []]
        queue.client.xpending_range.return_value = [{'message_id': '1-0', 'times_delivered': 4}]
        messages = queue.receive('worker-1')

        assert messages == []
        stream, fields = queue.client.xadd.call_args.args
        assert stream == 'queue:enrichment-dlq'
        assert fields['original_id'] == '1-0'
        assert fields['delivery_count'] == '4'
        queue.client.xack.assert_called_once_with('queue:enrichment', 'enrichment-workers', '1-0')

    def test_deleted_entries_skipped(self):
        queue = make_queue()
        queue.client.xautoclaim.return_value = ['0-0', [('1-0', None)], ['1-0']]
        assert queue.receive('worker-1') == []

    def test_unreadable_body_kept_raw(self):
        queue = make_queue()
        queue.client.xreadgroup.return_value = [['queue:enrichment', [('7-0', {'body': 'not json'})]]]
        assert queue.receive('worker-1')[0].body == {'_raw': 'not json'}


class TestSettle:
    """ack / stay pending for retry / dead-letter on the last delivery."""

    def message(self, outcome=None, delivery_count=1, error=None):
        return QueueMessage(id='9-0', body={'n': 9}, queue='enrichment',
                            delivery_count=delivery_count, outcome=outcome, error=error)

    def test_ack_and_no_outcome(self):
        queue = make_queue()
        acked = self.message()
        acked.ack()
        result = queue.settle([acked, self.message()])

        assert result.acked == 2
        assert queue.client.xack.call_count == 2
        assert queue.client.xdel.call_count == 2

    def test_retry_stays_pending(self):
        queue = make_queue()
        result = queue.settle([self.message(OUTCOME_RETRY, delivery_count=1, error='HTTP 503')])

        assert result.retried == 1
        assert result.errors == ['HTTP 503']
        queue.client.xack.assert_not_called()

    def test_last_delivery_dead_lettered(self):
        queue = make_queue()
        result = queue.settle([self.message(OUTCOME_RETRY, delivery_count=3, error='HTTP 503')])

        assert result.dead_lettered == 1
        fields = queue.client.xadd.call_args.args[1]
        assert fields['error'] == 'HTTP 503'
        assert fields['source_queue'] == 'enrichment'
        queue.client.xack.assert_called_once()

    def test_depth(self):
        queue = make_queue()
        queue.client.xlen.side_effect = [12, 2]
        queue.client.xpending.return_value = {'pending': 3}
        assert queue.depth() == {'length': 12, 'pending': 3, 'dead_letters': 2}


# =============================================================================
# Consumer loop
# =============================================================================

class TestConsumerLoop:

    def fake_queue(self, batches, budget=0):
        queue = MagicMock()
        queue.settings = {'batch_budget_seconds': budget, 'concurrency': 1}
        queue.receive.side_effect = list(batches)
        queue.settle.side_effect = lambda messages: SettleResult(acked=len(messages))
        return queue

    def test_run_batch(self):
        messages = [QueueMessage(id='1-0', body={}, queue='assets')]
        queue = self.fake_queue([messages], budget=100)
        handler = MagicMock()
        stats = consumer.run_batch(queue, handler, 'assets-1')

        handler.handle.assert_called_once()
        assert handler.handle.call_args.kwargs['deadline'] is not None
        queue.settle.assert_called_once_with(messages)
        assert stats.batches == 1
        assert stats.acked == 1

    def test_empty_poll_is_not_a_batch(self):
        queue = self.fake_queue([[]])
        handler = MagicMock()
        stats = consumer.run_batch(queue, handler, 'assets-1')

        assert stats.batches == 0
        handler.handle.assert_not_called()
        queue.settle.assert_not_called()

    def test_no_budget_no_deadline(self):
        queue = self.fake_queue([[QueueMessage(id='1-0', body={}, queue='assets')]])
        handler = MagicMock()
        consumer.run_batch(queue, handler, 'assets-1')
        assert handler.handle.call_args.kwargs['deadline'] is None

    def test_bounded_run_stops_when_idle(self):
        batch = [QueueMessage(id='1-0', body={}, queue='assets')]
        queue = self.fake_queue([batch, batch, []])
        stats = consumer.run_consumer('assets', consumer='assets-1', max_batches=5, queue=queue, handler=MagicMock())

        assert stats.batches == 2
        assert stats.received == 2
        assert queue.receive.call_count == 3

    def test_bounded_run_stops_at_max(self):
        batch = [QueueMessage(id='1-0', body={}, queue='assets')]
        queue = self.fake_queue([batch, batch, batch])
        stats = consumer.run_consumer('assets', consumer='assets-1', max_batches=2, queue=queue, handler=MagicMock())
        assert stats.batches == 2

    def test_interrupt_stops_cleanly(self):
        queue = self.fake_queue([KeyboardInterrupt()])
        stats = consumer.run_consumer('assets', consumer='assets-1', queue=queue, handler=MagicMock())
        assert stats.batches == 0

    def test_unknown_queue(self):
        with pytest.raises(ValueError):
            consumer.build_handler('shipping')

    def test_default_consumer_name(self):
        assert consumer.default_consumer_name('assets').startswith('assets-')
