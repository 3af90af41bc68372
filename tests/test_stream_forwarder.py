import json
import threading

import pytest

from pcapagent.errors import SinkUnavailable
from pcapagent.services.captured_units import BatchKind, CapturedFrame, TrafficStatisticsSample
from pcapagent.services.stream_forwarder import StreamForwarder


class FlakySink:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.appended = []

    def append_batch(self, stream_key, entries):
        self.calls += 1
        if self.calls <= self.failures:
            raise SinkUnavailable("temporarily down")
        self.appended.append((stream_key, list(entries)))
        return "1-0"


class BlockingSink:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.entered = threading.Event()
        self.appended = []

    def append_batch(self, stream_key, entries):
        self.entered.set()
        self.release.wait(5)
        self.appended.append(list(entries))
        return "1-0"


def _frames(count: int):
    return tuple(CapturedFrame(data=bytes([i]), timestamp=float(i), device="eth0") for i in range(count))


def test_forward_appends_whole_batch_in_capture_order(sink) -> None:
    fwd = StreamForwarder(sink, "host_test")
    try:
        fwd.forward(BatchKind.FRAMES, _frames(3))
    finally:
        fwd.shutdown()

    assert len(sink.appended) == 1
    key, entries = sink.appended[0]
    assert key == "host_test"
    assert [tag for tag, _ in entries] == ["raw_packets"] * 3
    assert [json.loads(value)["timestamp"] for _, value in entries] == [0.0, 1.0, 2.0]
    assert json.loads(entries[1][1])["data"] == "AQ=="


def test_statistics_records_use_statistics_tag(sink) -> None:
    fwd = StreamForwarder(sink, "host_test")
    sample = TrafficStatisticsSample(timestamp=1.5, device="eth0", received_packets=10, received_bytes=640, dropped_packets=2)
    try:
        fwd.forward(BatchKind.STATISTICS, (sample,))
    finally:
        fwd.shutdown()

    tag, value = sink.entries()[0]
    assert tag == "statistics"
    assert json.loads(value) == {
        "device": "eth0",
        "timestamp": 1.5,
        "received_packets": 10,
        "received_bytes": 640,
        "dropped_packets": 2,
        "interface_errors": 0,
    }


def test_forward_raises_after_last_attempt() -> None:
    flaky = FlakySink(failures=10)
    fwd = StreamForwarder(flaky, "host_test", max_attempts=3, retry_backoff_seconds=0)
    try:
        with pytest.raises(SinkUnavailable):
            fwd.forward(BatchKind.FRAMES, _frames(2))
    finally:
        fwd.shutdown()
    assert flaky.calls == 3
    assert flaky.appended == []


def test_forward_retries_until_sink_recovers() -> None:
    flaky = FlakySink(failures=1)
    fwd = StreamForwarder(flaky, "host_test", max_attempts=2, retry_backoff_seconds=0)
    try:
        fwd.forward(BatchKind.FRAMES, _frames(2))
    finally:
        fwd.shutdown()
    assert flaky.calls == 2
    assert len(flaky.appended) == 1
    assert fwd.stats()["forwarded_units"] == 2


def test_submit_logs_and_drops_failed_batch(sink) -> None:
    sink.fail = True
    fwd = StreamForwarder(sink, "host_test")
    try:
        future = fwd.submit(BatchKind.FRAMES, _frames(3))
        assert future is not None
        assert fwd.wait_pending(timeout=5)
        assert future.exception() is None
        stats = fwd.stats()
    finally:
        fwd.shutdown()
    assert stats["dropped_batches"] == 1
    assert stats["forwarded_batches"] == 0


def test_submit_ignores_empty_batch(sink) -> None:
    fwd = StreamForwarder(sink, "host_test")
    try:
        assert fwd.submit(BatchKind.FRAMES, ()) is None
    finally:
        fwd.shutdown()
    assert sink.calls == 0


def test_submit_drops_when_backlog_is_full() -> None:
    blocking = BlockingSink()
    fwd = StreamForwarder(blocking, "host_test", max_workers=1, max_pending=1)
    try:
        first = fwd.submit(BatchKind.FRAMES, _frames(1))
        assert blocking.entered.wait(5)
        second = fwd.submit(BatchKind.FRAMES, _frames(1))
        blocking.release.set()
        assert fwd.wait_pending(timeout=5)
        stats = fwd.stats()
    finally:
        blocking.release.set()
        fwd.shutdown()
    assert first is not None
    assert second is None
    assert stats["dropped_batches"] == 1
    assert len(blocking.appended) == 1


def test_submit_after_shutdown_counts_batch_as_dropped(sink) -> None:
    fwd = StreamForwarder(sink, "host_test")
    fwd.shutdown()

    assert fwd.submit(BatchKind.FRAMES, _frames(2)) is None
    assert fwd.stats()["dropped_batches"] == 1
    assert fwd.wait_pending(timeout=1)
    assert sink.calls == 0
