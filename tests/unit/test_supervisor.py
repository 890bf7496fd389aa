"""
Unit tests for BrokerSupervisor.

Tests cover:
- Broker argv construction
- Start/stop of a held process
- Idempotent start and stop
- Stop-by-name fallback on POSIX and Windows
- Spawn failures
"""

import tempfile
from pathlib import Path

import pytest

from broker.aclsync.config import MosquittoConfig
from broker.aclsync.errors import SupervisorError
from broker.aclsync.process.runner import CommandRunner
from broker.aclsync.process.supervisor import BrokerSupervisor


@pytest.fixture
def config():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield MosquittoConfig(config_dir=tmpdir, stop_timeout_seconds=5)


class TestCommand:
    """Tests for broker argv."""

    def test_default_command(self, config):
        supervisor = BrokerSupervisor(config)
        assert supervisor.command() == ["mosquitto", "-c", str(config.config_path), "-v"]

    def test_exe_dir_and_quiet(self):
        config = MosquittoConfig(
            config_dir="/etc/mosquitto", exe_dir="/opt/mosquitto", verbose=False
        )
        argv = BrokerSupervisor(config).command()
        assert argv[0] == str(Path("/opt/mosquitto") / "mosquitto")
        assert argv[1:] == ["-c", str(config.config_path)]


class TestHeldProcess:
    """Tests for start/stop through the held handle."""

    def test_start_and_stop(self, config, broker_runner):
        supervisor = BrokerSupervisor(config, broker_runner)

        supervisor.start()
        assert supervisor.is_running
        assert supervisor.pid == broker_runner.processes[0].pid
        assert broker_runner.launched[0] == tuple(supervisor.command())

        supervisor.stop()
        assert not supervisor.is_running
        assert supervisor.pid is None
        assert broker_runner.processes[0].poll() is not None
        # The held handle was used; no stop-by-name
        assert broker_runner.calls == []

    def test_start_twice_launches_once(self, config, broker_runner):
        supervisor = BrokerSupervisor(config, broker_runner)
        supervisor.start()
        pid = supervisor.pid

        supervisor.start()

        assert supervisor.pid == pid
        assert len(broker_runner.launched) == 1
        supervisor.stop()

    def test_restart_after_stop(self, config, broker_runner):
        supervisor = BrokerSupervisor(config, broker_runner)
        supervisor.start()
        supervisor.stop()
        supervisor.start()

        assert supervisor.is_running
        assert len(broker_runner.launched) == 2
        supervisor.stop()

    def test_stop_after_process_exited(self, config, broker_runner):
        """A broker that already died is cleared without error."""
        supervisor = BrokerSupervisor(config, broker_runner)
        supervisor.start()
        broker_runner.processes[0].kill()
        broker_runner.processes[0].wait()

        supervisor.stop()

        assert not supervisor.is_running

    def test_start_failure(self, config):
        """A missing broker binary raises SupervisorError and leaves it stopped."""
        config = MosquittoConfig(config_dir=config.config_dir, exe_dir="/nonexistent")
        supervisor = BrokerSupervisor(config, CommandRunner())

        with pytest.raises(SupervisorError):
            supervisor.start()

        assert not supervisor.is_running


class TestStopByName:
    """Tests for the stop-by-name fallback."""

    def test_posix_pkill_exact_name(self, config, recording_runner):
        """pkill matches the exact process name, never mosquitto-acl or mosquitto-sync."""
        supervisor = BrokerSupervisor(config, recording_runner, platform="posix")
        supervisor.stop()
        assert recording_runner.calls[0]["argv"] == ("pkill", "-9", "-x", "mosquitto")

    def test_windows_taskkill(self, config, recording_runner):
        supervisor = BrokerSupervisor(config, recording_runner, platform="nt")
        supervisor.stop()
        assert recording_runner.calls[0]["argv"] == (
            "taskkill", "/IM", "mosquitto.exe", "/F",
        )

    @pytest.mark.parametrize("platform,exit_code", [("posix", 1), ("nt", 128)])
    def test_no_match_is_already_stopped(self, config, recording_runner, platform, exit_code):
        """Nothing to kill is not an error; stop stays idempotent."""
        recording_runner.exit_code = exit_code
        supervisor = BrokerSupervisor(config, recording_runner, platform=platform)

        supervisor.stop()
        supervisor.stop()

        assert len(recording_runner.calls) == 2

    def test_unexpected_failure(self, config, recording_runner):
        recording_runner.exit_code = 3
        recording_runner.stderr = "pkill: permission denied"
        supervisor = BrokerSupervisor(config, recording_runner, platform="posix")

        with pytest.raises(SupervisorError) as exc_info:
            supervisor.stop()
        assert "permission denied" in exc_info.value.message

    def test_fallback_disabled(self, recording_runner):
        config = MosquittoConfig(config_dir="/etc/mosquitto", stop_by_name_fallback=False)
        supervisor = BrokerSupervisor(config, recording_runner)

        supervisor.stop()

        assert recording_runner.calls == []
