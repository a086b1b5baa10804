import sys
import threading
import time
import uuid
from pathlib import Path

import pytest
import zmq

REPO_ROOT = Path(__file__).resolve().parents[1]
SOFTWARE_DIR = REPO_ROOT / "software"
for path in (REPO_ROOT, SOFTWARE_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from gain_bridge.bridge import GainBridge
from gain_bridge.config_validation import BridgeSettings, BusSettings

LOOPBACK = "tcp://127.0.0.1:*"


def wait_for(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class RecordingNotifier:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, channel, gains):
        with self._lock:
            self.calls.append((channel, gains))

    def for_channel(self, channel):
        with self._lock:
            return [gains for ch, gains in self.calls if ch == channel]


def loopback_settings(**bus_overrides):
    bus = dict(
        embedded=True,
        publish_endpoint=LOOPBACK,
        subscribe_endpoint=LOOPBACK,
        ready_timeout=5.0,
        flush=True,
        flush_timeout=1.0,
    )
    bus.update(bus_overrides)
    return BridgeSettings(bus=BusSettings(**bus))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def bridge(notifier):
    gain_bridge = GainBridge(loopback_settings(), notifier)
    gain_bridge.start()
    try:
        yield gain_bridge
    finally:
        gain_bridge.shutdown()


class BusListener:
    """Raw SUB socket on the bridge's broker, confirmed live before use."""

    def __init__(self, bridge, *topics):
        self.context = zmq.Context()
        self.sock = self.context.socket(zmq.SUB)
        self.sock.setsockopt(zmq.LINGER, 0)
        self.sock.connect(bridge.subscribe_endpoint)
        for topic in topics:
            self.sock.setsockopt_string(zmq.SUBSCRIBE, topic)
        probe = f"_probe.test.{uuid.uuid4().hex}"
        self.sock.setsockopt_string(zmq.SUBSCRIBE, probe)
        deadline = time.monotonic() + 3.0
        while time.monotonic() < deadline:
            bridge.bus.publisher.send_raw(probe)
            if self.sock.poll(20):
                topic, _payload = self.sock.recv_multipart()
                if topic.decode() == probe:
                    break
        else:
            raise AssertionError("listener subscription never went live")
        # drain any duplicate probes still in flight
        while self.sock.poll(50):
            self.sock.recv_multipart()

    def drain(self, timeout=0.2):
        messages = []
        while self.sock.poll(int(timeout * 1000)):
            topic, payload = self.sock.recv_multipart()
            messages.append((topic.decode(), payload))
        return messages

    def close(self):
        self.sock.close(linger=0)
        self.context.term()


@pytest.fixture
def bus_listener():
    listeners = []

    def factory(bridge, *topics):
        listener = BusListener(bridge, *topics)
        listeners.append(listener)
        return listener

    yield factory
    for listener in listeners:
        listener.close()
