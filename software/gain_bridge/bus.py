"""Embedded bus broker and the lifecycle that wraps the bridge around it.

The "bus" is a ZeroMQ XSUB/XPUB proxy.  Publishers (this bridge, the control
process) connect PUB sockets to ``publish_endpoint``; subscribers connect SUB
sockets to ``subscribe_endpoint``.  Endpoints are plain config, and wildcard
ports (``tcp://127.0.0.1:*``) work: the broker reports what it actually
bound.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import zmq

from .config_validation import BusSettings
from .errors import StartupError, TransportError
from .gains import GainCache
from .publisher import OutboundPublisher
from .relay import InboundRelay, Notifier

log = logging.getLogger(__name__)


class EmbeddedBroker:
    """XSUB/XPUB proxy running on its own thread and ZeroMQ context."""

    def __init__(self, publish_endpoint: str, subscribe_endpoint: str):
        self.publish_endpoint = publish_endpoint
        self.subscribe_endpoint = subscribe_endpoint
        self.bound_publish_endpoint: Optional[str] = None
        self.bound_subscribe_endpoint: Optional[str] = None
        self.error: Optional[BaseException] = None
        self._control_endpoint = f"inproc://gain-bridge-broker-{id(self)}"
        self._context: Optional[zmq.Context] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    def start(self) -> None:
        self._context = zmq.Context()
        self._thread = threading.Thread(target=self._run, name="gain-bridge-broker", daemon=True)
        self._thread.start()

    def wait_ready(self, timeout: float) -> bool:
        return self._ready.wait(timeout) and self.error is None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        ctx = self._context
        sockets = []
        try:
            xsub = ctx.socket(zmq.XSUB)
            sockets.append(xsub)
            xpub = ctx.socket(zmq.XPUB)
            sockets.append(xpub)
            control = ctx.socket(zmq.PAIR)
            sockets.append(control)
            for sock in sockets:
                sock.setsockopt(zmq.LINGER, 0)
            xsub.bind(self.publish_endpoint)
            xpub.bind(self.subscribe_endpoint)
            control.bind(self._control_endpoint)
            self.bound_publish_endpoint = xsub.getsockopt_string(zmq.LAST_ENDPOINT)
            self.bound_subscribe_endpoint = xpub.getsockopt_string(zmq.LAST_ENDPOINT)
        except zmq.ZMQError as exc:
            self.error = exc
            log.error("Embedded bus failed to bind: %s", exc)
            for sock in sockets:
                sock.close(linger=0)
            self._ready.set()
            return

        log.info(
            "Embedded bus ready: publish=%s subscribe=%s",
            self.bound_publish_endpoint,
            self.bound_subscribe_endpoint,
        )
        self._ready.set()
        try:
            zmq.proxy_steerable(xsub, xpub, None, control)
        except zmq.ContextTerminated:
            log.debug("embedded bus context terminated")
        finally:
            for sock in sockets:
                sock.close(linger=0)

    def stop(self, timeout: float = 2.0) -> None:
        """Terminate the proxy; safe to call repeatedly or before start()."""

        if self._context is None:
            return
        if self._thread is not None and self._thread.is_alive() and self.error is None:
            ctl = self._context.socket(zmq.PAIR)
            try:
                ctl.setsockopt(zmq.LINGER, 0)
                ctl.connect(self._control_endpoint)
                ctl.send(b"TERMINATE")
            except zmq.ZMQError as exc:
                log.warning("Could not signal embedded bus shutdown: %s", exc)
            finally:
                ctl.close(linger=0)
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                log.warning("Embedded bus thread did not exit within %.1fs", timeout)
                # the proxy still owns live sockets; term() would block forever
                self._thread = None
                self._context = None
                return
            self._thread = None
        self._context.term()
        self._context = None
        log.info("Embedded bus shut down")


class BusLifecycle:
    """Start broker → client → subscriptions; tear down in reverse.

    ``start()`` either leaves everything running or raises
    :class:`StartupError` with whatever it managed to open already closed.
    ``stop()`` never raises on missing or half-open resources.
    """

    def __init__(
        self,
        settings: BusSettings,
        cache: GainCache,
        notify: Optional[Notifier] = None,
        *,
        audit=None,
    ):
        self.settings = settings
        self.cache = cache
        self.notify = notify
        self.audit = audit
        self.broker: Optional[EmbeddedBroker] = None
        self.context: Optional[zmq.Context] = None
        self.publisher: Optional[OutboundPublisher] = None
        self.relay: Optional[InboundRelay] = None
        self.publish_endpoint: Optional[str] = None
        self.subscribe_endpoint: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.relay is not None and self.publisher is not None

    def start(self) -> None:
        try:
            self._start()
        except StartupError:
            self.stop()
            raise
        except (TransportError, zmq.ZMQError) as exc:
            self.stop()
            raise StartupError(f"Bus startup failed: {exc}") from exc

    def _start(self) -> None:
        settings = self.settings
        timeout = settings.ready_timeout
        publish_endpoint = settings.publish_endpoint
        subscribe_endpoint = settings.subscribe_endpoint

        if settings.embedded:
            self.broker = EmbeddedBroker(publish_endpoint, subscribe_endpoint)
            self.broker.start()
            if not self.broker.wait_ready(timeout):
                reason = self.broker.error or f"no ready signal within {timeout:.1f}s"
                raise StartupError(f"Embedded bus failed to start: {reason}")
            publish_endpoint = self.broker.bound_publish_endpoint
            subscribe_endpoint = self.broker.bound_subscribe_endpoint
        self.publish_endpoint = publish_endpoint
        self.subscribe_endpoint = subscribe_endpoint

        self.context = zmq.Context()
        publisher = OutboundPublisher(
            self.context,
            publish_endpoint,
            subscribe_endpoint,
            flush=settings.flush,
            flush_timeout=settings.flush_timeout,
        )
        try:
            publisher.open()
        except TransportError as exc:
            raise StartupError(str(exc)) from exc
        self.publisher = publisher
        if not publisher.confirm_route(timeout):
            raise StartupError(
                f"Failed to connect to bus at {publish_endpoint}: "
                f"no round trip within {timeout:.1f}s"
            )
        log.info("Connected to bus at %s", publish_endpoint)

        relay = InboundRelay(
            self.context,
            subscribe_endpoint,
            self.cache,
            self.notify,
            audit=self.audit,
        )
        self.relay = relay
        relay.start()
        failed = relay.wait_subscribed(timeout)
        if failed:
            names = ", ".join(group.value for group in failed)
            raise StartupError(f"Failed to subscribe to gain broadcasts for {names}")
        self._confirm_subscriptions(timeout)

    def _confirm_subscriptions(self, timeout: float, interval: float = 0.02) -> None:
        deadline = time.monotonic() + timeout
        while True:
            pending = self.relay.unprobed()
            if not pending:
                return
            if time.monotonic() >= deadline:
                topics = ", ".join(worker.topic for worker in pending)
                raise StartupError(f"Subscriptions never went live: {topics}")
            for worker in pending:
                try:
                    self.publisher.send_raw(worker.probe_topic)
                except TransportError as exc:
                    raise StartupError(f"Probe publish failed: {exc}") from exc
            time.sleep(interval)

    def stop(self) -> None:
        workers_stopped = True
        if self.relay is not None:
            workers_stopped = self.relay.stop()
            self.relay = None
        if self.publisher is not None:
            self.publisher.close()
            self.publisher = None
        if self.context is not None:
            if workers_stopped:
                self.context.term()
            else:
                # a wedged worker still holds its socket; don't block on term()
                log.warning("Abandoning bus client context with a live relay worker")
            self.context = None
        if self.broker is not None:
            self.broker.stop()
            self.broker = None
