"""Tests for the result channel and the worker restart loop."""
import threading
import time

import numpy as np
import pytest

from kmeans_optimizer.engine.kmeans import KMeansEngine
from kmeans_optimizer.errors import TransportError
from kmeans_optimizer.models import ClusteringResult, MessageKind, ResultMessage
from kmeans_optimizer.orchestrator.channel import ResultChannel
from kmeans_optimizer.orchestrator.worker import run_restarts


def _make_message(worker_id=0, sequence=0, variance=1.0):
    result = ClusteringResult.from_array(variance, np.array([[0.0, 0.0], [1.0, 1.0]]))
    return ResultMessage(worker_id=worker_id, sequence=sequence, result=result)


def _drain_until(channel, expected, timeout=5.0):
    """Drain repeatedly: queued items reach the pipe asynchronously."""
    total = 0
    deadline = time.monotonic() + timeout
    while total < expected and time.monotonic() < deadline:
        total += channel.drain()
        time.sleep(0.01)
    return total


@pytest.fixture
def channel():
    ch = ResultChannel(maxsize=16, put_timeout=0.05)
    yield ch
    ch.close()


class TestResultChannel:
    """Test send/receive semantics."""

    def test_send_receive(self, channel):
        assert channel.send(_make_message(variance=2.5)) is True

        message = channel.receive(timeout=5)

        assert message.kind == MessageKind.RESULT
        assert message.result.variance == 2.5

    def test_per_producer_order(self, channel):
        for seq in range(5):
            channel.send(_make_message(worker_id=3, sequence=seq))

        received = [channel.receive(timeout=5).sequence for _ in range(5)]

        assert received == [0, 1, 2, 3, 4]

    def test_receive_timeout_returns_none(self, channel):
        assert channel.receive(timeout=0.05) is None

    def test_unexpected_message_kind(self, channel):
        channel._queue.put("not a result")

        with pytest.raises(TransportError):
            channel.receive(timeout=5)

    def test_full_channel_gives_up_after_stop(self):
        ch = ResultChannel(maxsize=1, put_timeout=0.01)
        stop = threading.Event()
        try:
            assert ch.send(_make_message(sequence=0), stop) is True
            stop.set()
            assert ch.send(_make_message(sequence=1), stop) is False
        finally:
            _drain_until(ch, 1)
            ch.close()

    def test_full_channel_blocks_until_drained(self):
        """A producer on a full channel resumes once the consumer takes a message."""
        ch = ResultChannel(maxsize=1, put_timeout=0.01)
        stop = threading.Event()
        outcome = {}
        try:
            ch.send(_make_message(sequence=0), stop)
            producer = threading.Thread(
                target=lambda: outcome.setdefault("sent", ch.send(_make_message(sequence=1), stop))
            )
            producer.start()
            time.sleep(0.1)

            assert ch.receive(timeout=5).sequence == 0
            producer.join(timeout=5)

            assert outcome["sent"] is True
            assert ch.receive(timeout=5).sequence == 1
        finally:
            stop.set()
            ch.close()

    def test_drain_discards_everything(self, channel):
        for seq in range(3):
            channel.send(_make_message(sequence=seq))

        assert _drain_until(channel, 3) == 3
        assert channel.receive(timeout=0.05) is None

    def test_send_after_close(self):
        ch = ResultChannel(maxsize=4)
        ch.close()
        ch.close()

        assert ch.closed
        with pytest.raises(TransportError):
            ch.send(_make_message())


class TestRunRestarts:
    """Test the worker restart loop in-process."""

    def _make_engine(self, seed=0):
        points = np.array([[0.0, 0.0], [0.0, 1.0], [10.0, 0.0], [10.0, 1.0]])
        return KMeansEngine(points, 2, np.random.default_rng(seed))

    def test_sends_sequenced_results(self, channel):
        stop = threading.Event()

        sent = run_restarts(self._make_engine(), channel, stop, worker_id=7, max_restarts=4)

        messages = [channel.receive(timeout=5) for _ in range(4)]
        assert sent == 4
        assert [m.sequence for m in messages] == [0, 1, 2, 3]
        assert all(m.worker_id == 7 for m in messages)
        assert all(m.result.n_clusters == 2 for m in messages)

    def test_stops_when_event_set(self, channel):
        stop = threading.Event()
        stop.set()

        assert run_restarts(self._make_engine(), channel, stop, worker_id=0) == 0
        assert channel.receive(timeout=0.05) is None

    def test_stop_while_running(self, channel):
        stop = threading.Event()
        worker = threading.Thread(target=run_restarts, args=(self._make_engine(), channel, stop, 0))
        worker.start()

        first = channel.receive(timeout=5)
        stop.set()
        while worker.is_alive():
            channel.drain()
            worker.join(timeout=0.05)

        assert first.sequence == 0
