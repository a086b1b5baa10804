"""``gain-bridge`` entry point: boot the bus, wire up the OSC surface, idle."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import threading
from pathlib import Path
from typing import Iterable, Optional

from .audit import REPO_ROOT, AuditLogger
from .bridge import GainBridge
from .config_validation import ValidationError, load_settings
from .errors import StartupError
from .osc_ui import OscKnobServer, OscUiSink

DEFAULT_CONFIG_PATH = (REPO_ROOT / "config" / "bridge.yaml").resolve()


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description=(
            "Relay PID knob moves from an OSC tuning surface onto the gain bus "
            "and mirror the controller's gain broadcasts back."
        )
    )
    ap.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to the bridge YAML (default: {DEFAULT_CONFIG_PATH} when present).",
    )
    ap.add_argument("--publish-endpoint", help="Override bus.publish_endpoint")
    ap.add_argument("--subscribe-endpoint", help="Override bus.subscribe_endpoint")
    ap.add_argument(
        "--external-bus",
        action="store_true",
        help="Connect to an already running broker instead of embedding one.",
    )
    ap.add_argument(
        "--no-flush",
        action="store_true",
        help="Fire-and-forget knob publishes (skip the broker round trip).",
    )
    ap.add_argument("--osc-port", type=int, help="Override ui.listen_port")
    ap.add_argument("--ui-host", help="Override ui.target_host")
    ap.add_argument("--ui-port", type=int, help="Override ui.target_port")
    ap.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO)")
    return ap


def apply_overrides(settings, args):
    bus_changes = {}
    if args.publish_endpoint:
        bus_changes["publish_endpoint"] = args.publish_endpoint
    if args.subscribe_endpoint:
        bus_changes["subscribe_endpoint"] = args.subscribe_endpoint
    if args.external_bus:
        bus_changes["embedded"] = False
    if args.no_flush:
        bus_changes["flush"] = False

    ui_changes = {}
    if args.osc_port is not None:
        ui_changes["listen_port"] = args.osc_port
    if args.ui_host:
        ui_changes["target_host"] = args.ui_host
    if args.ui_port is not None:
        ui_changes["target_port"] = args.ui_port

    return dataclasses.replace(
        settings,
        bus=dataclasses.replace(settings.bus, **bus_changes),
        ui=dataclasses.replace(settings.ui, **ui_changes),
    )


def main(argv: Optional[Iterable[str]] = None, *, stop_event: Optional[threading.Event] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log = logging.getLogger("gain_bridge")
    audit = AuditLogger()

    config_path = args.config
    if config_path is None and DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH
    try:
        settings = load_settings(config_path)
    except ValidationError as exc:
        audit.write(
            "config_validation",
            status="error",
            message="Bridge config validation failed",
            details={"path": str(config_path), "errors": exc.errors},
        )
        for line in exc.errors:
            log.error("config: %s", line)
        return 2
    except OSError as exc:
        audit.write(
            "config_load",
            status="error",
            message=f"Failed to load bridge config {config_path}",
            details={"path": str(config_path), "error": str(exc)},
        )
        log.error("Failed to load config %s: %s", config_path, exc)
        return 2
    settings = apply_overrides(settings, args)

    sink = OscUiSink(settings.ui)
    bridge = GainBridge(settings, sink, audit=audit)
    try:
        bridge.start()
    except StartupError as exc:
        log.error("%s", exc)
        return 1

    knobs = OscKnobServer(bridge, settings.ui, sink)
    stop_event = stop_event or threading.Event()
    try:
        knobs.start()
        log.info("Gain bridge up; Ctrl+C to stop")
        while not stop_event.wait(0.5):
            pass
    except KeyboardInterrupt:
        audit.write(
            "operator_interrupt",
            status="info",
            message="Operator interrupted bridge (Ctrl+C).",
        )
    except OSError as exc:
        log.error("OSC listener failed on %s:%s: %s", settings.ui.listen_host, settings.ui.listen_port, exc)
        return 1
    finally:
        knobs.stop()
        bridge.shutdown()
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
