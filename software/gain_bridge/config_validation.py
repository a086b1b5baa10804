"""Config validation helpers for the gain bridge."""

from __future__ import annotations

import copy
import dataclasses
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Optional

import yaml


class ValidationError(Exception):
    """Aggregates config validation failures."""

    def __init__(self, errors: Iterable[str]):
        messages = list(errors)
        super().__init__("; ".join(messages))
        self.errors = messages


DEFAULT_CONFIG = {
    "bus": {
        "embedded": True,
        "publish_endpoint": "tcp://127.0.0.1:4222",
        "subscribe_endpoint": "tcp://127.0.0.1:4223",
        "ready_timeout": 5.0,
        "flush": True,
        "flush_timeout": 1.0,
    },
    "ui": {
        "listen_host": "127.0.0.1",
        "listen_port": 9020,
        "target_host": "127.0.0.1",
        "target_port": 9021,
        "knob_address": "/gains/knob",
        "update_prefix": "/gains/update",
        "error_address": "/gains/error",
    },
}

VALID_ENDPOINT_SCHEMES = ("tcp://", "ipc://")


@dataclasses.dataclass(frozen=True)
class BusSettings:
    embedded: bool = True
    publish_endpoint: str = DEFAULT_CONFIG["bus"]["publish_endpoint"]
    subscribe_endpoint: str = DEFAULT_CONFIG["bus"]["subscribe_endpoint"]
    ready_timeout: float = 5.0
    flush: bool = True
    flush_timeout: float = 1.0


@dataclasses.dataclass(frozen=True)
class UiSettings:
    listen_host: str = "127.0.0.1"
    listen_port: int = 9020
    target_host: str = "127.0.0.1"
    target_port: int = 9021
    knob_address: str = "/gains/knob"
    update_prefix: str = "/gains/update"
    error_address: str = "/gains/error"


@dataclasses.dataclass(frozen=True)
class BridgeSettings:
    bus: BusSettings = dataclasses.field(default_factory=BusSettings)
    ui: UiSettings = dataclasses.field(default_factory=UiSettings)


# ---- validation primitives -------------------------------------------------


def _optional_mapping(section: Mapping, key: str, path: str, errors: list[str]) -> Mapping:
    if key not in section or section[key] is None:
        return {}
    if not isinstance(section[key], Mapping):
        errors.append(f"'{path}.{key}' must be a mapping")
        return {}
    return section[key]


def _check_number(
    section: Mapping,
    key: str,
    path: str,
    *,
    minimum=None,
    exclusive_minimum=None,
    maximum=None,
    integer: bool = False,
    errors: list[str],
) -> None:
    if key not in section:
        return
    value = section[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"'{path}.{key}' must be a number")
        return
    if integer and not isinstance(value, int):
        errors.append(f"'{path}.{key}' must be an integer")
    if minimum is not None and value < minimum:
        errors.append(f"'{path}.{key}' must be >= {minimum}")
    if exclusive_minimum is not None and value <= exclusive_minimum:
        errors.append(f"'{path}.{key}' must be > {exclusive_minimum}")
    if maximum is not None and value > maximum:
        errors.append(f"'{path}.{key}' must be <= {maximum}")


def _check_bool(section: Mapping, key: str, path: str, errors: list[str]) -> None:
    if key in section and not isinstance(section[key], bool):
        errors.append(f"'{path}.{key}' must be boolean")


def _check_string(section: Mapping, key: str, path: str, errors: list[str]) -> Optional[str]:
    if key not in section:
        return None
    value = section[key]
    if not isinstance(value, str) or not value:
        errors.append(f"'{path}.{key}' must be a non-empty string")
        return None
    return value


def _check_osc_address(section: Mapping, key: str, path: str, errors: list[str]) -> None:
    address = _check_string(section, key, path, errors)
    if address is not None and not address.startswith("/"):
        errors.append(f"'{path}.{key}' must start with '/'")


def validate_bus_section(bus: Mapping, source: str, errors: list[str]) -> None:
    path = f"{source}.bus"
    _check_bool(bus, "embedded", path, errors)
    _check_bool(bus, "flush", path, errors)
    for key in ("publish_endpoint", "subscribe_endpoint"):
        endpoint = _check_string(bus, key, path, errors)
        if endpoint is not None and not endpoint.startswith(VALID_ENDPOINT_SCHEMES):
            allowed = list(VALID_ENDPOINT_SCHEMES)
            errors.append(f"'{path}.{key}' must use one of {allowed}")
    endpoints = (bus.get("publish_endpoint"), bus.get("subscribe_endpoint"))
    if (
        all(isinstance(ep, str) for ep in endpoints)
        and endpoints[0] == endpoints[1]
        and not endpoints[0].endswith(":*")
    ):
        errors.append(f"{path}: publish_endpoint and subscribe_endpoint must differ")
    _check_number(bus, "ready_timeout", path, exclusive_minimum=0, errors=errors)
    _check_number(bus, "flush_timeout", path, exclusive_minimum=0, errors=errors)


def validate_ui_section(ui: Mapping, source: str, errors: list[str]) -> None:
    path = f"{source}.ui"
    _check_string(ui, "listen_host", path, errors)
    _check_string(ui, "target_host", path, errors)
    # 0 lets the OS pick a free port (tests, rehearsal rigs)
    _check_number(ui, "listen_port", path, minimum=0, maximum=65535, integer=True, errors=errors)
    _check_number(ui, "target_port", path, minimum=1, maximum=65535, integer=True, errors=errors)
    for key in ("knob_address", "update_prefix", "error_address"):
        _check_osc_address(ui, key, path, errors)


def validate_bridge_config(cfg: Mapping, source: str = "bridge") -> None:
    errors: list[str] = []
    if not isinstance(cfg, Mapping):
        raise ValidationError([f"{source}: config must be a mapping"])

    unknown = sorted(set(cfg) - set(DEFAULT_CONFIG))
    if unknown:
        errors.append(f"{source}: unknown top-level sections {unknown}")

    bus = _optional_mapping(cfg, "bus", source, errors)
    validate_bus_section(bus, source, errors)
    ui = _optional_mapping(cfg, "ui", source, errors)
    validate_ui_section(ui, source, errors)

    if errors:
        raise ValidationError(errors)


def merge_defaults(cfg: Optional[Mapping]) -> MutableMapping:
    """Return ``DEFAULT_CONFIG`` with every section of ``cfg`` laid on top."""

    merged = copy.deepcopy(DEFAULT_CONFIG)
    for section, values in (cfg or {}).items():
        if isinstance(values, Mapping) and section in merged:
            merged[section].update(values)
    return merged


def settings_from_config(cfg: Optional[Mapping]) -> BridgeSettings:
    merged = merge_defaults(cfg)
    bus = merged["bus"]
    ui = merged["ui"]
    return BridgeSettings(
        bus=BusSettings(
            embedded=bool(bus["embedded"]),
            publish_endpoint=str(bus["publish_endpoint"]),
            subscribe_endpoint=str(bus["subscribe_endpoint"]),
            ready_timeout=float(bus["ready_timeout"]),
            flush=bool(bus["flush"]),
            flush_timeout=float(bus["flush_timeout"]),
        ),
        ui=UiSettings(
            listen_host=str(ui["listen_host"]),
            listen_port=int(ui["listen_port"]),
            target_host=str(ui["target_host"]),
            target_port=int(ui["target_port"]),
            knob_address=str(ui["knob_address"]),
            update_prefix=str(ui["update_prefix"]).rstrip("/"),
            error_address=str(ui["error_address"]),
        ),
    )


def load_yaml(path: Path) -> MutableMapping:
    return yaml.safe_load(Path(path).read_text()) or {}


def validate_file(path: Path, *, source_label: str | None = None) -> MutableMapping:
    cfg = load_yaml(path)
    validate_bridge_config(cfg, source_label or Path(path).name)
    return cfg


def load_settings(path: Path | None = None) -> BridgeSettings:
    """Validate ``path`` (when given) and turn it into :class:`BridgeSettings`."""

    if path is None:
        return settings_from_config(None)
    return settings_from_config(validate_file(path))
