"""
Shared fixtures for the mosquitto-sync test suite.

Provides command runners that never touch the real Mosquitto utilities:
- recording_runner: records run() calls and returns a canned result
- broker_runner: additionally launches a sleeping Python process in place of the broker
"""

import sys

import pytest

from broker.aclsync.process.runner import CommandResult, CommandRunner


class RecordingRunner(CommandRunner):
    """CommandRunner whose run() returns exit_code/stderr without executing anything."""

    def __init__(self, exit_code=0, stderr=""):
        super().__init__(timeout_seconds=5)
        self.exit_code = exit_code
        self.stderr = stderr
        self.calls = []

    def run(self, name, *args, timeout=None, sensitive=False):
        argv = (name, *args)
        self.calls.append({"argv": argv, "sensitive": sensitive})
        return CommandResult(args=argv, stdout="", stderr=self.stderr, exit_code=self.exit_code)


class FakeBrokerRunner(RecordingRunner):
    """Launches `python -c "sleep"` whatever broker argv it is given."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.launched = []
        self.processes = []

    def launch(self, name, *args, log_path=None):
        self.launched.append((name, *args))
        process = super().launch(
            sys.executable, "-c", "import time; time.sleep(60)", log_path=log_path
        )
        self.processes.append(process)
        return process


@pytest.fixture
def recording_runner():
    """Runner that succeeds without executing anything."""
    return RecordingRunner()


@pytest.fixture
def broker_runner():
    """Runner that launches a stand-in broker process; kills leftovers on teardown."""
    runner = FakeBrokerRunner()
    yield runner
    for process in runner.processes:
        if process.poll() is None:
            process.kill()
            process.wait()
