"""Tests for the coordinator: termination policy, collection loop and full runs."""
import json
import math
import uuid
from multiprocessing import shared_memory

import numpy as np
import pytest

from kmeans_optimizer.config import OptimizerConfig
from kmeans_optimizer.errors import ConfigurationError, LoadError, TransportError, WorkerPoolError
from kmeans_optimizer.models import ClusteringResult, CoordinatorState, ResultMessage
from kmeans_optimizer.orchestrator.master import CoordinatorContext, OptimizerMaster, TerminationPolicy


SQUARE_DATASET = "0,0\n0,1\n10,0\n10,1\n"


def _make_result(variance, offset=0.0):
    return ClusteringResult.from_array(variance, np.array([[offset, 0.0], [offset + 1.0, 1.0]]))


def _make_config(tmp_path, n_clusters=2, num_workers=2, dataset=SQUARE_DATASET, **overrides):
    dataset_path = tmp_path / "dataset.csv"
    dataset_path.write_text(dataset)
    params = dict(
        max_no_improvement=50,
        poll_interval=0.2,
        put_timeout=0.05,
        join_timeout=0.05,
        stop_timeout=30.0,
        seed=1234,
    )
    params.update(overrides)
    return OptimizerConfig(
        n_clusters=n_clusters,
        num_workers=num_workers,
        shm_key=uuid.uuid4().hex[:10],
        dataset_path=dataset_path,
        output_path=tmp_path / "centroids.csv",
        **params,
    )


def _segment_exists(name):
    try:
        shm = shared_memory.SharedMemory(name=name)
    except FileNotFoundError:
        return False
    shm.close()
    return True


class FakeChannel:
    """Scripted channel: hands out messages, then times out forever."""

    def __init__(self, messages):
        self.messages = list(messages)
        self.received = 0

    def receive(self, timeout=None):
        if not self.messages:
            return None
        self.received += 1
        return self.messages.pop(0)


def _messages(variances, worker_id=0):
    return [
        ResultMessage(worker_id=worker_id, sequence=i, result=_make_result(v, offset=float(i)))
        for i, v in enumerate(variances)
    ]


class TestTerminationPolicy:
    """Test best tracking and the stop rule."""

    def test_first_result_always_improves(self):
        policy = TerminationPolicy(3)

        done = policy.observe(_make_result(1e300))

        assert not done
        assert policy.best.variance == 1e300
        assert policy.best.non_improving_streak == 0
        assert policy.best.improvements == 1

    def test_initial_state(self):
        policy = TerminationPolicy(3)

        assert math.isinf(policy.best.variance)
        assert not policy.best.has_result

    def test_equal_variance_does_not_improve(self):
        policy = TerminationPolicy(5)
        first = _make_result(2.0, offset=0.0)
        policy.observe(first)

        policy.observe(_make_result(2.0, offset=7.0))

        assert policy.best.centroids == first.centroids
        assert policy.best.non_improving_streak == 1

    def test_improvement_resets_streak(self):
        policy = TerminationPolicy(5)
        for v in [3.0, 4.0, 5.0]:
            policy.observe(_make_result(v))
        assert policy.best.non_improving_streak == 2

        policy.observe(_make_result(1.0))

        assert policy.best.non_improving_streak == 0
        assert policy.best.variance == 1.0

    def test_stops_after_exactly_t_non_improving(self):
        policy = TerminationPolicy(3)
        variances = [5.0, 4.0, 6.0, 4.0, 3.0, 3.5, 9.0, 3.0]
        outcomes = [policy.observe(_make_result(v)) for v in variances]

        assert outcomes == [False] * 7 + [True]
        assert policy.best.variance == 3.0
        assert policy.best.results_received == 8

    def test_best_variance_never_increases(self):
        rng = np.random.default_rng(0)
        policy = TerminationPolicy(10_000)
        history = []
        for v in rng.uniform(0, 100, size=500):
            policy.observe(_make_result(float(v)))
            history.append(policy.best.variance)

        assert all(b <= a for a, b in zip(history, history[1:]))
        assert history[-1] == min(history)

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            TerminationPolicy(0)


class TestCollectResults:
    """Test the collection loop with a scripted channel."""

    def test_consumes_until_stop_rule(self, tmp_path):
        master = OptimizerMaster(_make_config(tmp_path, max_no_improvement=2))
        channel = FakeChannel(_messages([5.0, 4.0, 4.5, 1.0, 2.0, 3.0, 0.5, 0.1]))

        best = master.collect_results(channel)

        # 1.0 improves, then 2.0 and 3.0 fail twice in a row
        assert channel.received == 6
        assert best.variance == 1.0
        assert len(channel.messages) == 2

    def test_interleaved_workers(self, tmp_path):
        master = OptimizerMaster(_make_config(tmp_path, max_no_improvement=3))
        a = _messages([3.0, 2.0, 9.0], worker_id=0)
        b = _messages([5.0, 8.0, 7.0], worker_id=1)
        channel = FakeChannel([a[0], b[0], a[1], b[1], a[2], b[2]])

        best = master.collect_results(channel)

        assert best.variance == 2.0
        assert best.results_received == 6

    def test_sequence_gap_is_transport_error(self, tmp_path):
        master = OptimizerMaster(_make_config(tmp_path))
        msgs = _messages([3.0, 2.0, 1.0])
        channel = FakeChannel([msgs[0], msgs[2]])

        with pytest.raises(TransportError, match="expected #1"):
            master.collect_results(channel)

    def test_all_workers_gone(self, tmp_path):
        master = OptimizerMaster(_make_config(tmp_path))
        channel = FakeChannel(_messages([3.0]))

        with pytest.raises(WorkerPoolError):
            master.collect_results(channel, workers_alive=lambda: False)


class Recorder:
    """Stand-in store/channel/event recording calls in order."""

    def __init__(self, log, name):
        self.log = log
        self.name = name

    def set(self):
        self.log.append(f"{self.name}.set")

    def drain(self):
        self.log.append(f"{self.name}.drain")
        return 0

    def close(self):
        self.log.append(f"{self.name}.close")

    def release(self):
        self.log.append(f"{self.name}.release")


class InterruptedOnceProcess:
    """Stand-in worker process whose first join is interrupted."""

    name = "kmeans-worker-0"
    exitcode = 0

    def __init__(self):
        self.join_calls = 0
        self.joined = False

    def is_alive(self):
        return not self.joined

    def join(self, timeout=None):
        self.join_calls += 1
        if self.join_calls == 1:
            raise KeyboardInterrupt
        self.joined = True


class TestCoordinatorContext:
    """Test the single release path."""

    def test_teardown_order_and_once(self):
        log = []
        context = CoordinatorContext(
            store=Recorder(log, "store"),
            channel=Recorder(log, "channel"),
            stop_event=Recorder(log, "stop"),
        )

        context.teardown()
        context.teardown()

        assert log == ["stop.set", "channel.drain", "channel.close", "store.release"]

    def test_teardown_with_nothing_allocated(self):
        CoordinatorContext().teardown()

    def test_interrupted_stop_is_redone_by_teardown(self):
        """A Ctrl-C while joining workers does not mark them stopped."""
        log = []
        process = InterruptedOnceProcess()
        context = CoordinatorContext(
            store=Recorder(log, "store"),
            channel=Recorder(log, "channel"),
            stop_event=Recorder(log, "stop"),
            processes=[process],
        )

        with pytest.raises(KeyboardInterrupt):
            context.stop_workers()
        assert process.is_alive()

        context.teardown()

        assert not process.is_alive()
        assert process.join_calls == 2
        assert log[-2:] == ["channel.close", "store.release"]


class TestOptimizerMasterRun:
    """Full runs with real worker processes."""

    def test_square_example(self, tmp_path):
        config = _make_config(tmp_path, summary_path=tmp_path / "summary.json")
        master = OptimizerMaster(config)

        summary = master.run()

        assert master.state == CoordinatorState.TERMINATED
        assert summary.best_variance == pytest.approx(0.25)
        assert not summary.cancelled
        assert summary.written
        assert sorted(config.output_path.read_text().splitlines()) == ["0.00,0.50", "10.00,0.50"]
        assert sum(summary.results_per_worker.values()) == summary.results_received
        assert summary.results_received >= config.max_no_improvement + 1
        assert not _segment_exists(config.shm_name)
        assert all(not p.is_alive() for p in master.context.processes)

        saved = json.loads(config.summary_path.read_text())
        assert saved["best_variance"] == pytest.approx(0.25)
        assert saved["written"] is True

    def test_blob_dataset(self, tmp_path):
        rng = np.random.default_rng(4)
        centers = np.array([[0.0, 0.0], [30.0, 0.0], [15.0, 25.0]])
        points = np.vstack([c + rng.normal(0, 1.0, size=(40, 2)) for c in centers])
        dataset = "".join(f"{x:.6f},{y:.6f}\n" for x, y in points)
        config = _make_config(tmp_path, n_clusters=3, num_workers=3, dataset=dataset, max_no_improvement=30)

        summary = OptimizerMaster(config).run()

        found = np.array(sorted(summary.best_centroids))
        expected = np.array(sorted(points[i * 40:(i + 1) * 40].mean(axis=0).tolist() for i in range(3)))
        np.testing.assert_allclose(found, expected, atol=1e-5)
        assert len(config.output_path.read_text().splitlines()) == 3

    def test_k_not_below_point_count(self, tmp_path):
        config = _make_config(tmp_path, n_clusters=4)
        master = OptimizerMaster(config)

        with pytest.raises(LoadError):
            master.run()

        assert master.state == CoordinatorState.TERMINATED
        assert master.context.store is None
        assert master.context.channel is None
        assert not _segment_exists(config.shm_name)
        assert not config.output_path.exists()

    def test_invalid_k_allocates_nothing(self, tmp_path):
        master = OptimizerMaster(_make_config(tmp_path, n_clusters=0))

        with pytest.raises(ConfigurationError):
            master.run()

        assert master.context is None
        assert master.state == CoordinatorState.INIT

    def test_interrupt_persists_best_so_far(self, tmp_path):
        config = _make_config(tmp_path)
        master = OptimizerMaster(config)

        def interrupted(channel, workers_alive):
            message = channel.receive(timeout=30)
            master.policy.observe(message.result)
            raise KeyboardInterrupt

        master.collect_results = interrupted
        summary = master.run()

        assert summary.cancelled
        assert summary.written
        assert summary.results_received == 1
        assert len(config.output_path.read_text().splitlines()) == 2
        assert not _segment_exists(config.shm_name)

    def test_interrupt_before_any_result_writes_nothing(self, tmp_path):
        config = _make_config(tmp_path)
        master = OptimizerMaster(config)

        def interrupted(channel, workers_alive):
            raise KeyboardInterrupt

        master.collect_results = interrupted
        summary = master.run()

        assert summary.cancelled
        assert not summary.written
        assert math.isinf(summary.best_variance)
        assert not config.output_path.exists()
        assert not _segment_exists(config.shm_name)
        assert all(not p.is_alive() for p in master.context.processes)
