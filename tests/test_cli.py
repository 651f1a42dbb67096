import json
import os
import tempfile
import pytest
from unittest.mock import patch
from staged_rollout.cli import load_state, save_state, main
from staged_rollout.slots import SlotManager

ENDPOINT = "http://staging.internal/health"


def run_cli(*argv):
    """Run the CLI and return its exit code"""
    with patch('sys.argv', ['staged-rollout', *argv]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    return exc_info.value.code


class TestStateFile:
    """Slot state persisted between CLI invocations."""

    def test_load_missing_state_is_empty(self):
        assert load_state("non_existent_state.json") == {}

    def test_save_and_load_state(self):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "state.json")
            save_state(path, {"prod-eu": slots})
            loaded = load_state(path)

        assert set(loaded) == {"prod-eu"}
        assert loaded["prod-eu"].production.version == "v1"
        assert loaded["prod-eu"].staging.version == "v2"

    def test_load_invalid_json_raises(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            f.write("invalid json content")
            temp_path = f.name
        try:
            with pytest.raises(json.JSONDecodeError):
                load_state(temp_path)
        finally:
            os.unlink(temp_path)


class TestCLIArgumentParsing:
    """Argument parsing without running a rollout."""

    def test_help_exits_cleanly(self):
        assert run_cli('--help') == 0
        assert run_cli('rollout', '--help') == 0
        assert run_cli('discard', '--help') == 0

    def test_missing_command_fails(self):
        assert run_cli() != 0

    def test_missing_required_arguments_fail(self):
        assert run_cli('rollout') != 0
        assert run_cli('rollout', '--artifact', 'v2') != 0
        assert run_cli('discard') != 0

    def test_invalid_argument_values_fail(self):
        assert run_cli('--log-level', 'INVALID', 'status') != 0
        assert run_cli('rollout', '--artifact', 'v2', '--environment', 'prod', '--cadence', 'fast') != 0

    def test_log_level_is_case_insensitive(self):
        with tempfile.TemporaryDirectory() as tmp:
            assert run_cli('--log-level', 'debug', 'status', '--state', os.path.join(tmp, 's.json')) == 0


class TestCLIRollout:
    """Full rollouts driven by scripted probes."""

    def test_promoted_rollout_exits_zero_and_persists_state(self, capsys):
        with tempfile.TemporaryDirectory() as tmp:
            state = os.path.join(tmp, "state.json")
            code = run_cli('rollout', '--artifact', 'v2', '--environment', 'prod-eu',
                           '--endpoint', ENDPOINT, '--state', state, '--production-version', 'v1',
                           '--probe-script', 'fail,pass,pass,pass', '--cadence', '0')
            out = json.loads(capsys.readouterr().out)
            saved = load_state(state)

        assert code == 0
        assert out["outcome"] == "promoted"
        assert out["artifact_ref"] == "v2"
        assert saved["prod-eu"].production.version == "v2"
        assert saved["prod-eu"].staging.version == "v1"

    def test_rolled_back_rollout_exits_two(self, capsys):
        with tempfile.TemporaryDirectory() as tmp:
            state = os.path.join(tmp, "state.json")
            code = run_cli('rollout', '--artifact', 'v2', '--environment', 'prod-eu',
                           '--endpoint', ENDPOINT, '--state', state, '--production-version', 'v1',
                           '--probe-script', 'fail', '--cadence', '0')
            out = json.loads(capsys.readouterr().out)
            saved = load_state(state)

        assert code == 2
        assert out["outcome"] == "rolled_back"
        assert saved["prod-eu"].production.version == "v1"
        assert saved["prod-eu"].staging.empty

    def test_invalid_endpoint_fails_with_configuration_invalid(self, capsys):
        with tempfile.TemporaryDirectory() as tmp:
            state = os.path.join(tmp, "state.json")
            code = run_cli('rollout', '--artifact', 'v2', '--environment', 'prod-eu',
                           '--endpoint', 'nowhere', '--state', state, '--probe-script', 'pass')
            out = json.loads(capsys.readouterr().out)

        assert code == 1
        assert out["outcome"] == "failed"
        assert out["error_kind"] == "ConfigurationInvalid"

    def test_bad_probe_script_fails(self, capsys):
        code = run_cli('rollout', '--artifact', 'v2', '--environment', 'prod-eu',
                       '--endpoint', ENDPOINT, '--probe-script', 'pass,maybe')
        assert code == 1
        assert "unknown probe outcome" in capsys.readouterr().out


class TestCLIInspection:
    """Status, audit and operator discard."""

    def test_status_audit_and_discard(self, capsys):
        slots = SlotManager("prod-eu", production_version="v1")
        slots.stage("v2", deployment_id="d1")
        slots.swap(actor="ci", deployment_id="d1")
        slots.stage("v3", deployment_id="d2")

        with tempfile.TemporaryDirectory() as tmp:
            state = os.path.join(tmp, "state.json")
            save_state(state, {"prod-eu": slots})

            assert run_cli('status', '--state', state) == 0
            status = json.loads(capsys.readouterr().out)
            assert status["prod-eu"]["cells"][status["prod-eu"]["live"]]["version"] == "v2"
            assert "audit" not in status["prod-eu"]

            assert run_cli('discard', '--state', state, '--environment', 'prod-eu') == 0
            capsys.readouterr()

            assert run_cli('audit', '--state', state, '--environment', 'prod-eu') == 0
            audit = json.loads(capsys.readouterr().out)["prod-eu"]
            assert [r["action"] for r in audit] == ["swap", "discard"]
            assert audit[-1]["actor"] == "operator"
            assert audit[-1]["previous_version"] == "v3"

    def test_unknown_environment(self, capsys):
        with tempfile.TemporaryDirectory() as tmp:
            state = os.path.join(tmp, "state.json")
            assert run_cli('discard', '--state', state, '--environment', 'nope') == 1
            assert run_cli('status', '--state', state, '--environment', 'nope') == 1
