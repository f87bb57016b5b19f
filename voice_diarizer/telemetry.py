#!/usr/bin/env python3
"""
telemetry.py - Fire-and-forget telemetry for diarization events

Sinks receive (event, properties) pairs. The diarization code never waits on a
sink and never fails because of one: BackgroundTelemetry hands events to a
daemon thread through a bounded queue and drops events when the queue is full.

Events emitted by the service:
    speaker_detection, speaker_enrollment, speaker_verification,
    profile_deletion, model_load_failure, realtime_session
"""

import logging
import queue
import threading
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TelemetrySink:
    """Receives telemetry events."""

    def track(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


def safe_track(sink: TelemetrySink, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
    """Forward an event to sink, logging instead of raising if the sink fails."""
    try:
        sink.track(event, properties)
    except Exception as e:
        logger.warning("[Telemetry] Sink failed for %s: %s", event, e)


class NullTelemetrySink(TelemetrySink):
    def track(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        pass


class LoggingTelemetrySink(TelemetrySink):
    """Writes events to the diarization logger at INFO."""

    def track(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        logger.info("[Telemetry] %s %s", event, properties or {})


class RecordingTelemetrySink(TelemetrySink):
    """Keeps events in memory (useful for tests and diagnostics)."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def track(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self.events.append((event, dict(properties or {})))

    def names(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self.events]


class BackgroundTelemetry(TelemetrySink):
    """
    Non-blocking wrapper around another sink.

    track() enqueues and returns immediately; a daemon thread forwards events.
    Errors raised by the wrapped sink are logged and discarded.
    """

    def __init__(self, sink: TelemetrySink, max_queue: int = 256):
        self.sink = sink
        self.dropped = 0
        self._queue: "queue.Queue[Optional[Tuple[str, Dict[str, Any]]]]" = queue.Queue(maxsize=max_queue)
        self._thread = threading.Thread(target=self._run, name="diarization-telemetry", daemon=True)
        self._thread.start()

    def track(self, event: str, properties: Optional[Dict[str, Any]] = None) -> None:
        try:
            self._queue.put_nowait((event, dict(properties or {})))
        except queue.Full:
            self.dropped += 1

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                event, properties = item
                safe_track(self.sink, event, properties)
            finally:
                self._queue.task_done()

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until queued events have been delivered."""
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def wait():
            self._queue.join()
            done.set()

        threading.Thread(target=wait, daemon=True).start()
        done.wait(timeout)

    def close(self, timeout: float = 1.0) -> None:
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("[Telemetry] Queue still full on close, %d events pending", self._queue.qsize())
            return
        self._thread.join(timeout=timeout)
