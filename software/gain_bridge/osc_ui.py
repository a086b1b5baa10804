"""OSC glue between a tuning surface (TouchOSC, Open Stage Control, a
Processing sketch...) and the gain bridge.

Inbound, the surface sends ``/gains/knob <identifier> <value>`` whenever a
knob moves.  Outbound, the bridge answers with:

* ``/gains/update/<group>`` + nine floats (``kp`` x/y/z, ``ki`` x/y/z,
  ``kd`` x/y/z) each time the control process broadcasts new gains;
* ``/gains/error <identifier> <kind> <message>`` when a knob update is
  rejected, so the surface can flash the knob instead of silently eating it.

Addresses are configurable under ``ui`` in ``config/bridge.yaml``.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from pythonosc import dispatcher, udp_client
from pythonosc.osc_server import ThreadingOSCUDPServer

from .bridge import GainBridge
from .config_validation import UiSettings
from .errors import BridgeError, InvalidIdentifierError
from .gains import GainVector
from .publisher import KnobUpdate

log = logging.getLogger(__name__)


class OscUiSink:
    """Notifier that mirrors gain updates and knob errors back to the surface."""

    def __init__(self, settings: UiSettings, client: Optional[udp_client.SimpleUDPClient] = None):
        self.settings = settings
        self.client = client or udp_client.SimpleUDPClient(settings.target_host, settings.target_port)

    def address_for(self, channel: str) -> str:
        # "update:pos" → "/gains/update/pos"
        _, _, group = channel.partition(":")
        return f"{self.settings.update_prefix}/{group}"

    def __call__(self, channel: str, gains: GainVector) -> None:
        self.client.send_message(self.address_for(channel), gains.flatten())

    def report_error(self, identifier, exc: BridgeError) -> None:
        kind = exc.component if isinstance(exc, InvalidIdentifierError) else exc.kind
        self.client.send_message(
            self.settings.error_address,
            [str(identifier), kind, str(exc)],
        )


class OscKnobServer:
    """Listen for knob messages and push them through the bridge."""

    def __init__(self, bridge: GainBridge, settings: UiSettings, sink: Optional[OscUiSink] = None):
        self.bridge = bridge
        self.settings = settings
        self.sink = sink or OscUiSink(settings)
        self.accepted = 0
        self.rejected = 0
        self._server: Optional[ThreadingOSCUDPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._counter_lock = threading.Lock()

        disp = dispatcher.Dispatcher()
        disp.map(settings.knob_address, self.on_knob)
        self._dispatcher = disp

    def on_knob(self, addr, *vals) -> None:
        """OSC handler for knob moves.

        python-osc hands over every argument the sender packed; we expect the
        identifier string first and the value second.  Anything else is
        reported back as an error rather than guessed at.
        """

        identifier = vals[0] if vals else None
        value = vals[1] if len(vals) > 1 else None
        try:
            self.bridge.publish_knob(KnobUpdate(identifier=identifier, value=value))
        except BridgeError as exc:
            with self._counter_lock:
                self.rejected += 1
            log.warning("Rejected knob %r from %s: %s", identifier, addr, exc)
            self.sink.report_error(identifier, exc)
            return
        with self._counter_lock:
            self.accepted += 1

    def start(self) -> None:
        self._server = ThreadingOSCUDPServer(
            (self.settings.listen_host, self.settings.listen_port),
            self._dispatcher,
        )
        self._server.daemon_threads = True
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="gain-bridge-osc",
            daemon=True,
        )
        self._thread.start()
        log.info("OSC knob surface listening on %s", self._server.server_address)

    @property
    def server_address(self):
        return self._server.server_address if self._server else None

    @property
    def listening_port(self) -> Optional[int]:
        return self._server.server_address[1] if self._server else None

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=1)
            self._thread = None
