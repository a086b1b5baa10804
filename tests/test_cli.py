import json
import threading
from pathlib import Path

from gain_bridge import cli


def read_actions(log_dir: Path):
    log_path = log_dir / "ops_events.jsonl"
    if not log_path.exists():
        return []
    return [json.loads(line)["action"] for line in log_path.read_text().splitlines() if line.strip()]


def test_overrides_layer_on_top_of_file_settings():
    args = cli.build_parser().parse_args(
        ["--publish-endpoint", "tcp://10.0.0.2:4222", "--external-bus", "--no-flush", "--osc-port", "0"]
    )
    settings = cli.apply_overrides(cli.load_settings(cli.DEFAULT_CONFIG_PATH), args)
    assert settings.bus.publish_endpoint == "tcp://10.0.0.2:4222"
    assert settings.bus.subscribe_endpoint == "tcp://127.0.0.1:4223"
    assert settings.bus.embedded is False
    assert settings.bus.flush is False
    assert settings.ui.listen_port == 0
    assert settings.ui.target_port == 9021


def test_bad_config_exits_with_usage_error(tmp_path, monkeypatch):
    monkeypatch.setenv("GAIN_BRIDGE_LOG_DIR", str(tmp_path / "logs"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("bus:\n  ready_timeout: -1\n")
    assert cli.main(["--config", str(bad)]) == 2
    assert read_actions(tmp_path / "logs") == ["config_validation"]


def test_missing_config_exits_with_usage_error(tmp_path, monkeypatch):
    monkeypatch.setenv("GAIN_BRIDGE_LOG_DIR", str(tmp_path / "logs"))
    assert cli.main(["--config", str(tmp_path / "absent.yaml")]) == 2
    assert read_actions(tmp_path / "logs") == ["config_load"]


def test_unreachable_external_bus_exits_with_failure(tmp_path, monkeypatch):
    monkeypatch.setenv("GAIN_BRIDGE_LOG_DIR", str(tmp_path / "logs"))
    config = tmp_path / "external.yaml"
    config.write_text(
        f"""
bus:
  embedded: false
  publish_endpoint: "ipc://{tmp_path}/pub"
  subscribe_endpoint: "ipc://{tmp_path}/sub"
  ready_timeout: 0.2
"""
    )
    assert cli.main(["--config", str(config), "--osc-port", "0"]) == 1
    assert read_actions(tmp_path / "logs") == ["bridge_startup_failed"]


def test_bridge_boots_and_stops_cleanly(tmp_path, monkeypatch):
    monkeypatch.setenv("GAIN_BRIDGE_LOG_DIR", str(tmp_path / "logs"))
    stop = threading.Event()
    stop.set()
    exit_code = cli.main(
        [
            "--publish-endpoint",
            "tcp://127.0.0.1:*",
            "--subscribe-endpoint",
            "tcp://127.0.0.1:*",
            "--osc-port",
            "0",
        ],
        stop_event=stop,
    )
    assert exit_code == 0
    assert read_actions(tmp_path / "logs") == ["bridge_boot", "bridge_shutdown"]
