"""Inbound relay: gain broadcasts from the control process → cache → UI.

Each axis group gets its own :class:`SubscriptionWorker`: a daemon thread
with a private ZeroMQ SUB socket.  Sockets are never shared between threads,
and a stalled UI callback on the attitude worker can't hold up position
updates.
"""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from typing import Callable, List, Optional

import zmq

from .errors import DecodeError
from .gains import GainCache, GainVector
from .topics import AxisGroup, broadcast_topic

log = logging.getLogger(__name__)

Notifier = Callable[[str, GainVector], None]

PROBE_ROOT = "_probe"

_relay_thread = threading.local()


def in_relay_callback() -> bool:
    """True when the calling thread belongs to a subscription worker."""

    return getattr(_relay_thread, "active", False)


class WorkerState(enum.Enum):
    IDLE = "idle"
    AWAITING_MESSAGE = "awaiting_message"
    DECODING = "decoding"
    CACHE_UPDATED = "cache_updated"
    DECODE_FAILED = "decode_failed"


class SubscriptionWorker:
    """Listen on one group's broadcast topic and keep its cache slot fresh."""

    def __init__(
        self,
        context: zmq.Context,
        endpoint: str,
        group: AxisGroup,
        cache: GainCache,
        notify: Optional[Notifier] = None,
        *,
        audit=None,
        poll_interval: float = 0.05,
    ):
        self.context = context
        self.endpoint = endpoint
        self.group = group
        self.cache = cache
        self.notify = notify
        self.audit = audit
        self.poll_interval = poll_interval
        self.topic = broadcast_topic(group)
        self.probe_topic = f"{PROBE_ROOT}.{group.value}.{uuid.uuid4().hex}"
        self.state = WorkerState.IDLE
        self.messages = 0
        self.decode_failures = 0
        self.error: Optional[BaseException] = None
        self._subscribed = threading.Event()
        self._probed = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"gain-relay-{self.group.value}",
            daemon=True,
        )
        self._thread.start()

    def wait_subscribed(self, timeout: float) -> bool:
        return self._subscribed.wait(timeout) and self.error is None

    @property
    def probed(self) -> bool:
        return self._probed.is_set()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 1.0) -> bool:
        """Ask the worker to exit; True once its thread is gone."""

        self._stop.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        stopped = not self._thread.is_alive()
        if stopped:
            self._thread = None
        else:
            log.warning("relay worker %s did not stop within %.1fs", self.group.value, timeout)
        return stopped

    def _run(self) -> None:
        _relay_thread.active = True
        sock = None
        try:
            sock = self.context.socket(zmq.SUB)
            sock.setsockopt(zmq.LINGER, 0)
            sock.connect(self.endpoint)
            sock.setsockopt_string(zmq.SUBSCRIBE, self.topic)
            # subscribed after the real topic, so an echoed probe proves both
            sock.setsockopt_string(zmq.SUBSCRIBE, self.probe_topic)
        except zmq.ZMQError as exc:
            self.error = exc
            log.error("relay %s could not subscribe on %s: %s", self.group.value, self.endpoint, exc)
            if sock is not None:
                sock.close(linger=0)
            self._subscribed.set()
            return

        self._subscribed.set()
        self.state = WorkerState.AWAITING_MESSAGE
        poller = zmq.Poller()
        poller.register(sock, zmq.POLLIN)
        timeout_ms = int(self.poll_interval * 1000)
        try:
            while not self._stop.is_set():
                events = dict(poller.poll(timeout_ms))
                if sock not in events:
                    continue
                frames = sock.recv_multipart()
                try:
                    self.handle(frames)
                except Exception:  # noqa: BLE001
                    # the subscription outlives any one message
                    self.decode_failures += 1
                    self.state = WorkerState.AWAITING_MESSAGE
                    log.exception("relay %s failed handling a message", self.group.value)
        except zmq.ContextTerminated:
            log.debug("relay %s context terminated", self.group.value)
        finally:
            sock.close(linger=0)
            self.state = WorkerState.IDLE

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------
    def handle(self, frames: List[bytes]) -> None:
        """Process one ``[topic, payload]`` message from the bus."""

        topic = frames[0].decode("utf-8", "replace") if frames else ""
        if topic == self.probe_topic:
            self._probed.set()
            return
        # SUB filters are prefixes; knob topics like pid.gains.pos.p.x land here too
        if topic != self.topic:
            log.debug("relay %s ignoring %s", self.group.value, topic)
            return

        self.messages += 1
        self.state = WorkerState.DECODING
        try:
            if len(frames) != 2:
                raise DecodeError(f"expected [topic, payload] frames, got {len(frames)}")
            gains = GainVector.decode(frames[1])
        except DecodeError as exc:
            self._reject(exc)
            self.state = WorkerState.AWAITING_MESSAGE
            return

        self.cache.update(self.group, gains)
        self.state = WorkerState.CACHE_UPDATED
        log.info("Updated %s gains: %s", self.group.value, gains)
        if self.notify is not None:
            try:
                self.notify(self.group.channel, gains)
            except Exception:  # noqa: BLE001
                log.exception("UI notification for %s failed", self.group.channel)
        self.state = WorkerState.AWAITING_MESSAGE

    def _reject(self, exc: DecodeError) -> None:
        self.decode_failures += 1
        self.state = WorkerState.DECODE_FAILED
        log.warning("Failed to decode %s broadcast: %s", self.topic, exc)
        if self.audit is not None:
            self.audit.write(
                "gain_decode",
                status="error",
                message=f"Dropped malformed {self.topic} broadcast",
                details={"group": self.group.value, "error": str(exc)},
            )


class InboundRelay:
    """One worker per axis group, started and stopped together."""

    def __init__(
        self,
        context: zmq.Context,
        endpoint: str,
        cache: GainCache,
        notify: Optional[Notifier] = None,
        *,
        audit=None,
    ):
        self.workers = {
            group: SubscriptionWorker(context, endpoint, group, cache, notify, audit=audit)
            for group in AxisGroup
        }

    def start(self) -> None:
        for worker in self.workers.values():
            worker.start()

    def wait_subscribed(self, timeout: float) -> List[AxisGroup]:
        """Return the groups whose subscription failed or never came up."""

        return [
            group
            for group, worker in self.workers.items()
            if not worker.wait_subscribed(timeout)
        ]

    def unprobed(self) -> List[SubscriptionWorker]:
        return [worker for worker in self.workers.values() if not worker.probed]

    def stop(self, timeout: float = 1.0) -> bool:
        results = [worker.stop(timeout) for worker in self.workers.values()]
        return all(results)
