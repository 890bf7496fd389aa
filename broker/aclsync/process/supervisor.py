"""
Broker process supervisor for mosquitto-sync.

Starts the Mosquitto broker with the configured config file and stops it
again. The supervisor keeps the handle of the process it started and stops
exactly that process. Only when no handle is held (for example after this
service restarted while the broker kept running) does it fall back to
terminating every process with the broker's name.

State machine:
    Stopped --start--> Running
    Running --stop-->  Stopped
    Stopped --stop-->  Stopped   (no-op)
    Running --start--> Running   (no-op while the held handle is alive)

Invariants:
    - start() returns once the OS confirms the spawn, never waits for readiness
    - stop() is idempotent
    - Stop-by-name is a fallback, never used while a live handle is held
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading

from ..config import MosquittoConfig
from ..errors import SupervisorError
from .runner import CommandRunner

logger = logging.getLogger(__name__)

# Exit codes meaning "nothing matched the name", i.e. already stopped
PKILL_NO_MATCH = 1
TASKKILL_NO_MATCH = 128


class BrokerSupervisor:
    """Starts and stops the broker process.

    Attributes:
        config: Broker files and binaries
        runner: Command runner used for launching and stop-by-name

    Example:
        >>> supervisor = BrokerSupervisor(MosquittoConfig(config_dir="/etc/mosquitto"))
        >>> supervisor.start()
        >>> supervisor.is_running
        True
        >>> supervisor.stop()
    """

    def __init__(
        self,
        config: MosquittoConfig,
        runner: CommandRunner | None = None,
        platform: str | None = None,
    ) -> None:
        self.config = config
        self.runner = runner or CommandRunner()
        self._platform = platform or os.name
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """True if the held handle refers to a live process."""
        return self._process is not None and self._process.poll() is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self.is_running else None

    def command(self) -> list[str]:
        """Broker argv for the configured files."""
        argv = [self.config.binary_path, "-c", str(self.config.config_path)]
        if self.config.verbose:
            argv.append("-v")
        return argv

    def start(self) -> None:
        """Launch the broker detached.

        Raises:
            SupervisorError: If the broker binary cannot be spawned
        """
        with self._lock:
            if self.is_running:
                logger.warning(f"Broker already running with pid {self._process.pid}")
                return

            argv = self.command()
            try:
                self._process = self.runner.launch(
                    argv[0], *argv[1:], log_path=self.config.log_file
                )
            except OSError as e:
                self._process = None
                logger.error(f"Could not start broker {argv[0]}: {e}")
                raise SupervisorError(f"Could not start broker: {e}", binary=argv[0]) from e

    def stop(self) -> None:
        """Terminate the broker.

        Raises:
            SupervisorError: If stop-by-name reports an unexpected failure
        """
        with self._lock:
            if self._process is not None:
                self._stop_handle(self._process)
                self._process = None
                return

            if not self.config.stop_by_name_fallback:
                logger.info("No broker handle held, nothing to stop")
                return

            self._stop_by_name()

    def _stop_handle(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            logger.info(f"Broker pid {process.pid} already exited with {process.returncode}")
            return

        logger.info(f"Stopping broker pid {process.pid}")
        process.terminate()
        try:
            process.wait(timeout=self.config.stop_timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"Broker pid {process.pid} did not exit within "
                f"{self.config.stop_timeout_seconds}s, killing"
            )
            process.kill()
            process.wait()
        logger.info(f"Broker pid {process.pid} stopped")

    def _stop_by_name(self) -> None:
        if self._platform == "nt":
            image = self.config.binary
            if not image.lower().endswith(".exe"):
                image += ".exe"
            result = self.runner.run("taskkill", "/IM", image, "/F")
            no_match = TASKKILL_NO_MATCH
        else:
            # -x: exact process name, so mosquitto-acl and mosquitto-sync never match
            result = self.runner.run("pkill", "-9", "-x", self.config.binary)
            no_match = PKILL_NO_MATCH

        if result.ok:
            logger.warning(f"Broker stopped by name ({self.config.binary}), no handle was held")
        elif result.exit_code == no_match:
            logger.info("No broker process found, already stopped")
        else:
            raise SupervisorError(
                f"Could not stop broker by name: {result.stderr.strip() or result.exit_code}",
                binary=self.config.binary,
            )
