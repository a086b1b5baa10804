"""Outbound publisher: knob update from the UI → one message on the bus."""

from __future__ import annotations

import json
import logging
import numbers
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional

import zmq

from .errors import EncodeError, TransportError
from .gains import to_float32
from .relay import in_relay_callback
from .topics import resolve

log = logging.getLogger(__name__)

FLUSH_ROOT = "_flush"


@dataclass(frozen=True)
class KnobUpdate:
    """One knob movement from the UI: which knob, and where it landed."""

    identifier: str
    value: float

    @classmethod
    def from_payload(cls, payload: Mapping) -> "KnobUpdate":
        """Accept the UI's ``{"knob": "posxp", "value": 1.5}`` shape."""

        return cls(identifier=payload.get("knob"), value=payload.get("value"))


def encode_value(value) -> bytes:
    """Encode a knob value as a JSON float rounded to 32-bit precision."""

    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise EncodeError(f"knob value must be a real number, got {type(value).__name__}")
    try:
        return json.dumps(to_float32(float(value)), allow_nan=False).encode("utf-8")
    except (OverflowError, ValueError) as exc:
        raise EncodeError(f"cannot encode knob value {value!r}: {exc}") from exc


class OutboundPublisher:
    """Owns the PUB socket knob updates go out on.

    A second SUB socket listens on a private flush topic.  Flushing sends a
    token after the payload and waits for it to come back through the
    broker; the broker forwards one connection's messages in order, so the
    echo means the knob update got there first.
    """

    def __init__(
        self,
        context: zmq.Context,
        publish_endpoint: str,
        subscribe_endpoint: str,
        *,
        flush: bool = True,
        flush_timeout: float = 1.0,
    ):
        self.context = context
        self.publish_endpoint = publish_endpoint
        self.subscribe_endpoint = subscribe_endpoint
        self.flush = flush
        self.flush_timeout = flush_timeout
        self.flush_topic = f"{FLUSH_ROOT}.{uuid.uuid4().hex}"
        self.published = 0
        self._pub: Optional[zmq.Socket] = None
        self._echo: Optional[zmq.Socket] = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._pub is not None

    def open(self) -> None:
        """Connect both sockets; raises :class:`TransportError` on failure."""

        with self._lock:
            try:
                self._pub = self.context.socket(zmq.PUB)
                self._pub.setsockopt(zmq.LINGER, 0)
                self._pub.connect(self.publish_endpoint)
                self._echo = self.context.socket(zmq.SUB)
                self._echo.setsockopt(zmq.LINGER, 0)
                self._echo.connect(self.subscribe_endpoint)
                self._echo.setsockopt_string(zmq.SUBSCRIBE, self.flush_topic)
            except zmq.ZMQError as exc:
                self._close_locked()
                raise TransportError(
                    f"Failed to connect to bus at {self.publish_endpoint}: {exc}"
                ) from exc

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        for sock in (self._pub, self._echo):
            if sock is not None and not sock.closed:
                sock.close(linger=0)
        self._pub = None
        self._echo = None

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def publish(self, update: KnobUpdate, *, flush: Optional[bool] = None) -> str:
        """Resolve, encode and send ``update``; returns the topic used.

        Raises :class:`InvalidIdentifierError` or :class:`EncodeError` before
        the bus is touched, :class:`TransportError` if the send or the flush
        fails.  Nothing is retried.
        """

        if in_relay_callback():
            raise RuntimeError("publish() must not be called from an inbound relay callback")

        log.debug("Knob %s changed to %r", update.identifier, update.value)
        topic = resolve(update.identifier)
        payload = encode_value(update.value)
        do_flush = self.flush if flush is None else flush

        with self._lock:
            self._send_locked(topic, payload)
            self.published += 1
            if do_flush:
                self._flush_locked(self.flush_timeout)

        log.info("Published gain %s to %s", payload.decode("utf-8"), topic)
        return topic

    def send_raw(self, topic: str, payload: bytes = b"") -> None:
        """Send an arbitrary frame pair (startup probes use this)."""

        with self._lock:
            self._send_locked(topic, payload)

    def _send_locked(self, topic: str, payload: bytes) -> None:
        if self._pub is None:
            raise TransportError("publisher is not connected to the bus")
        try:
            self._pub.send_multipart([topic.encode("utf-8"), payload], flags=zmq.NOBLOCK)
        except zmq.ZMQError as exc:
            log.warning("Failed to publish to %s: %s", topic, exc)
            raise TransportError(f"Failed to publish to {topic}: {exc}") from exc

    def _flush_locked(self, timeout: float) -> None:
        token = uuid.uuid4().hex.encode("ascii")
        self._send_locked(self.flush_topic, token)
        if not self._await_token(token, timeout):
            log.warning("Failed to flush bus connection within %.2fs", timeout)
            raise TransportError(f"flush not confirmed within {timeout:.2f}s")

    def _await_token(self, token: bytes, timeout: float) -> bool:
        if self._echo is None:
            raise TransportError("publisher is not connected to the bus")
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                if not self._echo.poll(int(remaining * 1000) + 1, zmq.POLLIN):
                    continue
                frames = self._echo.recv_multipart()
            except zmq.ZMQError as exc:
                log.warning("Failed to read flush echo: %s", exc)
                raise TransportError(f"flush echo failed: {exc}") from exc
            # stale tokens from earlier timed-out flushes are skipped
            if len(frames) == 2 and frames[1] == token:
                return True

    def confirm_route(self, timeout: float, interval: float = 0.05) -> bool:
        """Keep flushing until one echo returns or ``timeout`` runs out.

        Used at startup: the first flushes vanish until the broker has
        propagated the echo subscription back to the PUB side.
        """

        deadline = time.monotonic() + timeout
        with self._lock:
            if self._echo is None:
                return False
            while time.monotonic() < deadline:
                token = uuid.uuid4().hex.encode("ascii")
                self._send_locked(self.flush_topic, token)
                wait = min(interval, max(0.0, deadline - time.monotonic()))
                if self._await_token(token, wait):
                    return True
        return False
