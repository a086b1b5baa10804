import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import scripts.check_stack as check_stack
from gain_bridge.topics import AxisGroup


def test_expected_updates_fold_the_sweep():
    expected = check_stack.expected_updates([("posxp", 1.5), ("poszd", 2.0), ("attyi", 0.5)])
    assert expected["pos"] == [1.5, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 2.0]
    assert expected["att"] == [0.0, 0.0, 0.0, 0.0, 0.5, 0.0, 0.0, 0.0, 0.0]


def test_loopback_settings_use_free_ports():
    settings = check_stack.loopback_settings()
    assert settings.bus.publish_endpoint.endswith(":*")
    assert settings.ui.listen_port == 0


def test_cli_entrypoint_runs_fast():
    exit_code = check_stack.main(["--send-interval", "0.005", "--timeout", "5"])
    assert exit_code == 0


def test_cli_sweeps_every_knob_without_flush():
    exit_code = check_stack.main(
        ["--all-knobs", "--no-flush", "--send-interval", "0.005", "--timeout", "5"]
    )
    assert exit_code == 0


def test_control_mock_acknowledges_knobs(bridge):
    control = check_stack.ControlProcessMock(bridge.publish_endpoint, bridge.subscribe_endpoint)
    control.start()
    try:
        assert control.wait_ready()
        from gain_bridge.publisher import KnobUpdate

        bridge.publish_knob(KnobUpdate("attyd", 0.75))
        assert check_stack.wait_for(
            lambda: bridge.gains(AxisGroup.ATTITUDE).kd == (0.0, 0.75, 0.0), 3.0
        )
    finally:
        control.stop()
    assert control.received() == [("pid.gains.att.d.y", 0.75)]


def test_check_stack_logs_audit_events(tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    monkeypatch.setenv("GAIN_BRIDGE_LOG_DIR", str(log_dir))
    exit_code = check_stack.main(["--send-interval", "0.005", "--timeout", "5", "--log-events"])
    assert exit_code == 0
    log_path = log_dir / "ops_events.jsonl"
    assert log_path.exists(), "ops_events.jsonl missing despite logging flag"
    actions = [
        json.loads(line)["action"]
        for line in log_path.read_text().splitlines()
        if line.strip()
    ]
    assert actions[0] == "bridge_boot"
    assert actions[-1] == "bridge_shutdown"
    assert "gain_decode" in actions
    assert "knob_rejected" in actions
