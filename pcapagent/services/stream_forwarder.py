from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, Optional, Sequence, Set

from pcapagent.errors import SinkUnavailable
from pcapagent.services.captured_units import BatchKind

LOGGER = logging.getLogger(__name__)


class StreamForwarder:
    """
    Turns sealed batches into stream records and appends them to the sink.

    ``forward`` is synchronous and raises ``SinkUnavailable``. ``submit`` is the
    fire-and-forget path used from capture callbacks: failures are logged and the
    batch is dropped after ``max_attempts``.
    """

    def __init__(
        self,
        sink,
        stream_key: str,
        max_workers: int = 2,
        max_attempts: int = 1,
        retry_backoff_seconds: float = 0.5,
        max_pending: int = 256,
    ) -> None:
        self._sink = sink
        self._stream_key = stream_key
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = max(0.0, retry_backoff_seconds)
        self._max_pending = max(1, max_pending)
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="stream-forward")
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._forwarded_batches = 0
        self._forwarded_units = 0
        self._dropped_batches = 0
        self._closed = False

    @property
    def stream_key(self) -> str:
        return self._stream_key

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "forwarded_batches": self._forwarded_batches,
                "forwarded_units": self._forwarded_units,
                "dropped_batches": self._dropped_batches,
                "pending_batches": len(self._pending),
            }

    def forward(self, kind: BatchKind, batch: Sequence) -> None:
        if not batch:
            return
        entries = [(kind.value, unit.to_record()) for unit in batch]
        last_exc: Optional[SinkUnavailable] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._sink.append_batch(self._stream_key, entries)
            except SinkUnavailable as exc:
                last_exc = exc
                if attempt >= self._max_attempts:
                    break
                delay = self._retry_backoff * (2 ** (attempt - 1))
                LOGGER.warning(
                    "Retrying stream append kind=%s units=%s attempt=%s/%s delay_s=%.2f reason=%s",
                    kind.value,
                    len(entries),
                    attempt,
                    self._max_attempts,
                    delay,
                    exc,
                    extra={"category": "STREAM"},
                )
                time.sleep(delay)
                continue
            with self._lock:
                self._forwarded_batches += 1
                self._forwarded_units += len(entries)
            LOGGER.debug(
                "Forwarded batch kind=%s units=%s key=%s",
                kind.value,
                len(entries),
                self._stream_key,
                extra={"category": "STREAM"},
            )
            return
        assert last_exc is not None
        raise last_exc

    def submit(self, kind: BatchKind, batch: Sequence) -> Optional[Future]:
        if not batch:
            return None
        with self._lock:
            if self._closed:
                self._dropped_batches += 1
                LOGGER.warning(
                    "Forwarder is shut down, dropping batch kind=%s units=%s",
                    kind.value,
                    len(batch),
                    extra={"category": "STREAM"},
                )
                return None
            if len(self._pending) >= self._max_pending:
                self._dropped_batches += 1
                LOGGER.warning(
                    "Forward backlog full, dropping batch kind=%s units=%s pending=%s",
                    kind.value,
                    len(batch),
                    len(self._pending),
                    extra={"category": "STREAM"},
                )
                return None
            future = self._executor.submit(self._forward_and_log, kind, batch)
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def wait_pending(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            snapshot = set(self._pending)
        if not snapshot:
            return True
        _done, not_done = wait(snapshot, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        # Closed under the lock so no submit can reach the executor after its shutdown.
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_pending)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _forward_and_log(self, kind: BatchKind, batch: Sequence) -> None:
        try:
            self.forward(kind, batch)
        except SinkUnavailable as exc:
            with self._lock:
                self._dropped_batches += 1
            LOGGER.error(
                "Dropping batch after sink failure kind=%s units=%s reason=%s",
                kind.value,
                len(batch),
                exc,
                extra={"category": "ERRORS"},
            )
        except Exception:
            with self._lock:
                self._dropped_batches += 1
            LOGGER.exception(
                "Unexpected failure forwarding batch kind=%s units=%s",
                kind.value,
                len(batch),
                extra={"category": "ERRORS"},
            )
