"""The bridge itself: one object the UI layer talks to.

It owns the gain cache and the bus lifecycle, takes knob updates from the UI,
and hands cached gains back through a notifier callback.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from .bus import BusLifecycle
from .config_validation import BridgeSettings
from .errors import BridgeError, InvalidIdentifierError, StartupError, TransportError
from .gains import GainCache, GainVector
from .publisher import KnobUpdate
from .relay import Notifier
from .topics import AxisGroup

log = logging.getLogger(__name__)


class GainBridge:
    def __init__(
        self,
        settings: Optional[BridgeSettings] = None,
        notifier: Optional[Notifier] = None,
        *,
        audit=None,
    ):
        self.settings = settings or BridgeSettings()
        self.notifier = notifier
        self.audit = audit
        self.cache = GainCache()
        self.bus = BusLifecycle(self.settings.bus, self.cache, self._notify, audit=audit)

    def __enter__(self) -> "GainBridge":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        try:
            self.bus.start()
        except StartupError as exc:
            self._audit("bridge_startup_failed", "error", str(exc))
            raise
        self._audit(
            "bridge_boot",
            "info",
            "Gain bridge connected to bus",
            {
                "publish_endpoint": self.bus.publish_endpoint,
                "subscribe_endpoint": self.bus.subscribe_endpoint,
                "embedded": self.settings.bus.embedded,
                "flush": self.settings.bus.flush,
            },
        )

    def shutdown(self) -> None:
        was_running = self.bus.started
        self.bus.stop()
        if was_running:
            self._audit("bridge_shutdown", "closed", "Bus connection closed")

    @property
    def running(self) -> bool:
        return self.bus.started

    @property
    def publish_endpoint(self) -> Optional[str]:
        return self.bus.publish_endpoint

    @property
    def subscribe_endpoint(self) -> Optional[str]:
        return self.bus.subscribe_endpoint

    # ------------------------------------------------------------------
    # UI → control process
    # ------------------------------------------------------------------
    def publish_knob(self, update: KnobUpdate, *, flush: Optional[bool] = None) -> str:
        """Route one knob update onto the bus and return its topic.

        Failures propagate as :class:`BridgeError` subclasses so the UI can
        show them; they are also written to the audit log.
        """

        if self.bus.publisher is None:
            raise TransportError("bridge is not running")
        try:
            return self.bus.publisher.publish(update, flush=flush)
        except BridgeError as exc:
            details = {"knob": update.identifier, "error": exc.kind}
            if isinstance(exc, InvalidIdentifierError):
                details["component"] = exc.component
                log.warning("Invalid knob ID: %s", update.identifier)
            self._audit("knob_rejected", "error", str(exc), details)
            raise

    # ------------------------------------------------------------------
    # control process → UI
    # ------------------------------------------------------------------
    def gains(self, group: AxisGroup) -> GainVector:
        return self.cache.get(group)

    def snapshot(self) -> Dict[AxisGroup, GainVector]:
        return self.cache.snapshot()

    def _notify(self, channel: str, gains: GainVector) -> None:
        if self.notifier is not None:
            self.notifier(channel, gains)

    def _audit(self, action, status, message, details=None) -> None:
        if self.audit is not None:
            self.audit.write(action, status=status, message=message, details=details)
