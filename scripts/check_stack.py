#!/usr/bin/env python3
"""End-to-end loopback check for the gain bridge.

This harness pretends to be both ends of the tuning session: an OSC knob
surface on one side and the flight controller's PID process on the other.
Run it before a tuning session to catch a wedged broker, a broken topic map
or a UI port clash without powering up the airframe.
"""
from __future__ import annotations

import argparse
import json
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

REPO_ROOT = Path(__file__).resolve().parents[1]
SOFTWARE_DIR = REPO_ROOT / "software"
if str(SOFTWARE_DIR) not in sys.path:
    sys.path.insert(0, str(SOFTWARE_DIR))

import zmq
from pythonosc import dispatcher, udp_client
from pythonosc.osc_server import ThreadingOSCUDPServer

from gain_bridge.audit import AuditLogger
from gain_bridge.bridge import GainBridge
from gain_bridge.config_validation import BridgeSettings, BusSettings, UiSettings
from gain_bridge.gains import GainVector
from gain_bridge.osc_ui import OscKnobServer, OscUiSink
from gain_bridge.topics import TOPIC_ROOT, AxisGroup, broadcast_topic, knob_identifiers, parse

LOOPBACK_ENDPOINT = "tcp://127.0.0.1:*"

# identifier → value pairs replayed by default; one knob per (group, term)
DEFAULT_SWEEP: List[Tuple[str, float]] = [
    ("posxp", 1.5),
    ("posyi", 0.25),
    ("poszd", 0.125),
    ("attxp", 4.0),
    ("attyi", 0.5),
    ("attzd", 0.0625),
]


class ControlProcessMock:
    """Stand-in for the PID process on the far side of the bus.

    It listens on every knob topic, folds each value into its own gain
    vectors, and broadcasts the full vector for that group right back, the
    way the real controller acknowledges a retune.
    """

    def __init__(self, publish_endpoint: str, subscribe_endpoint: str) -> None:
        self.publish_endpoint = publish_endpoint
        self.subscribe_endpoint = subscribe_endpoint
        self.gains: Dict[AxisGroup, GainVector] = {group: GainVector.zero() for group in AxisGroup}
        self.knobs: List[Tuple[str, float]] = []
        self.probe_topic = f"_probe.control.{uuid.uuid4().hex}"
        self._context = zmq.Context()
        self._pub_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._ready = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pub: Optional[zmq.Socket] = None
        self._sub: Optional[zmq.Socket] = None

    def start(self) -> None:
        self._pub = self._context.socket(zmq.PUB)
        self._pub.setsockopt(zmq.LINGER, 0)
        self._pub.connect(self.publish_endpoint)
        self._sub = self._context.socket(zmq.SUB)
        self._sub.setsockopt(zmq.LINGER, 0)
        self._sub.connect(self.subscribe_endpoint)
        self._sub.setsockopt_string(zmq.SUBSCRIBE, f"{TOPIC_ROOT}.")
        self._sub.setsockopt_string(zmq.SUBSCRIBE, self.probe_topic)
        self._thread = threading.Thread(target=self._loop, name="control-mock", daemon=True)
        self._thread.start()

    def wait_ready(self, timeout: float = 2.0) -> bool:
        """Probe our own round trip until the broker routes it back."""

        deadline = time.monotonic() + timeout
        while not self._ready.is_set() and time.monotonic() < deadline:
            self._send(self.probe_topic, b"")
            self._ready.wait(0.02)
        return self._ready.is_set()

    def _send(self, topic: str, payload: bytes) -> None:
        with self._pub_lock:
            self._pub.send_multipart([topic.encode("utf-8"), payload])

    def broadcast(self, group: AxisGroup, gains: GainVector) -> None:
        self._send(broadcast_topic(group), gains.encode())

    def broadcast_raw(self, group: AxisGroup, payload: bytes) -> None:
        self._send(broadcast_topic(group), payload)

    def received(self) -> List[Tuple[str, float]]:
        with self._state_lock:
            return list(self.knobs)

    def _loop(self) -> None:
        poller = zmq.Poller()
        poller.register(self._sub, zmq.POLLIN)
        while not self._stop.is_set():
            if self._sub not in dict(poller.poll(20)):
                continue
            topic_raw, payload = self._sub.recv_multipart()
            topic = topic_raw.decode("utf-8")
            if topic == self.probe_topic:
                self._ready.set()
                continue
            parts = topic.split(".")
            # broadcasts (pid.gains.pos) share the prefix; only knob topics count
            if len(parts) != 5:
                continue
            _root, _gains, group, term, axis = parts
            knob = parse(f"{group}{axis}{term}")
            value = json.loads(payload)
            with self._state_lock:
                self.knobs.append((topic, value))
                current = self.gains[knob.group]
                triple = list(current.term(knob.term))
                triple[knob.axis_index] = value
                terms = {key: tuple(values) for key, values in current.as_dict().items()}
                terms[knob.term.payload_key] = tuple(triple)
                updated = GainVector(**terms)
                self.gains[knob.group] = updated
            self.broadcast(knob.group, updated)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=1)
            self._thread = None
        for sock in (self._pub, self._sub):
            if sock is not None:
                sock.close(linger=0)
        self._context.term()


class SurfaceMock:
    """Catch what the bridge sends back to the OSC tuning surface."""

    def __init__(self, settings: UiSettings) -> None:
        self.settings = settings
        self.updates: List[Tuple[str, List[float]]] = []
        self.errors: List[Tuple] = []
        self._lock = threading.Lock()
        disp = dispatcher.Dispatcher()
        disp.map(f"{settings.update_prefix}/*", self._on_update)
        disp.map(settings.error_address, self._on_error)
        self._server = ThreadingOSCUDPServer(("127.0.0.1", 0), disp)
        self._server.daemon_threads = True
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    def _on_update(self, addr: str, *vals) -> None:
        with self._lock:
            self.updates.append((addr, [float(v) for v in vals]))

    def _on_error(self, _addr: str, *vals) -> None:
        with self._lock:
            self.errors.append(tuple(vals))

    def start(self) -> None:
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def snapshot(self):
        with self._lock:
            return list(self.updates), list(self.errors)

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=1)


def loopback_settings(*, flush: bool = True, ui_target_port: int = 9, ready_timeout: float = 5.0) -> BridgeSettings:
    """Bridge settings bound to free loopback ports (CI/test friendly)."""

    return BridgeSettings(
        bus=BusSettings(
            embedded=True,
            publish_endpoint=LOOPBACK_ENDPOINT,
            subscribe_endpoint=LOOPBACK_ENDPOINT,
            ready_timeout=ready_timeout,
            flush=flush,
        ),
        ui=UiSettings(listen_port=0, target_port=ui_target_port),
    )


def wait_for(predicate, timeout: float, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def expected_updates(sweep: Iterable[Tuple[str, float]]) -> Dict[str, List[float]]:
    """Final ``/gains/update/<group>`` payload the sweep should converge on."""

    state = {group: [0.0] * 9 for group in AxisGroup}
    for identifier, value in sweep:
        knob = parse(identifier)
        term_offset = {"p": 0, "i": 3, "d": 6}[knob.term.value]
        state[knob.group][term_offset + knob.axis_index] = value
    return {group.value: values for group, values in state.items()}


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Spin up a gain bridge loopback smoke test.")
    parser.add_argument(
        "--send-interval",
        type=float,
        default=0.02,
        help="Delay between OSC knob sends in seconds",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=3.0,
        help="How long to wait for the surface to see every update",
    )
    parser.add_argument(
        "--all-knobs",
        action="store_true",
        help="Sweep all 18 knobs instead of the short default sweep",
    )
    parser.add_argument(
        "--no-flush",
        action="store_true",
        help="Exercise fire-and-forget publishes",
    )
    parser.add_argument(
        "--log-events",
        action="store_true",
        help="Write bridge audit events to ops_events.jsonl while testing",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.all_knobs:
        sweep = [(ident, float(idx + 1) / 8.0) for idx, ident in enumerate(knob_identifiers())]
    else:
        sweep = list(DEFAULT_SWEEP)

    audit = AuditLogger() if args.log_events else None
    settings = loopback_settings(flush=not args.no_flush)
    surface = SurfaceMock(settings.ui)
    surface.start()
    settings = BridgeSettings(
        bus=settings.bus,
        ui=UiSettings(listen_port=0, target_port=surface.port),
    )
    sink = OscUiSink(settings.ui)
    bridge = GainBridge(settings, sink, audit=audit)
    control: Optional[ControlProcessMock] = None
    knobs: Optional[OscKnobServer] = None
    try:
        bridge.start()
        control = ControlProcessMock(bridge.publish_endpoint, bridge.subscribe_endpoint)
        control.start()
        if not control.wait_ready():
            print("✖ control-process mock never saw its own probe", file=sys.stderr)
            return 1
        knobs = OscKnobServer(bridge, settings.ui, sink)
        knobs.start()
        client = udp_client.SimpleUDPClient("127.0.0.1", knobs.listening_port)

        # a malformed broadcast must not knock the relay over
        control.broadcast_raw(AxisGroup.POSITION, b'{"kp": [1, 2]}')
        for identifier, value in sweep:
            client.send_message(settings.ui.knob_address, [identifier, value])
            time.sleep(max(0.0, args.send_interval))
        client.send_message(settings.ui.knob_address, ["xyz12", 1.0])

        expected = expected_updates(sweep)

        def converged() -> bool:
            # OSC handlers run on server threads, so arrival order isn't list order
            updates, errors = surface.snapshot()
            seen = {addr.rsplit("/", 1)[-1]: False for addr, _ in updates}
            for addr, values in updates:
                group = addr.rsplit("/", 1)[-1]
                seen[group] = seen[group] or values == expected.get(group)
            cached = {group.value: gains.flatten() for group, gains in bridge.snapshot().items()}
            return cached == expected and all(seen.get(g) for g in expected) and len(errors) >= 1

        if not wait_for(converged, args.timeout):
            updates, errors = surface.snapshot()
            print(f"✖ surface never converged: updates={updates[-2:]} errors={errors}", file=sys.stderr)
            return 1
        if len(control.received()) != len(sweep):
            print(
                f"✖ control mock saw {len(control.received())} knob messages, expected {len(sweep)}",
                file=sys.stderr,
            )
            return 1
    finally:
        if knobs is not None:
            knobs.stop()
        if control is not None:
            control.stop()
        bridge.shutdown()
        surface.stop()

    print(f"✅ {len(sweep)} knob moves routed onto their gain topics.")
    print("✅ Control mock broadcasts landed in the cache and on the OSC surface.")
    print("✅ Malformed broadcast dropped; bogus knob reported back as an error.")
    print("All green. Go tune the real rig.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
