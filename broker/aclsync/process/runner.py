"""
External command execution for mosquitto-sync.

Two ways to run a program:
- run(): execute to completion under a timeout, capturing stdout/stderr/exit code
- launch(): spawn a detached long-running process and return its handle

Invariants:
    - run() never blocks longer than its timeout; the child is killed on expiry
    - A program that cannot be spawned by run() is reported as exit code 1
    - Arguments of sensitive commands are never logged
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from ..errors import CommandTimeout

logger = logging.getLogger(__name__)

DEFAULT_FAILED_CODE = 1


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a run-to-completion command.

    Attributes:
        args: Full argv that was executed
        stdout: Captured standard output
        stderr: Captured standard error
        exit_code: Process exit status
    """

    args: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner:
    """Runs external programs.

    Example:
        >>> runner = CommandRunner(timeout_seconds=10)
        >>> result = runner.run("mosquitto_passwd", "-b", "passwordfile", "alice", "secret",
        ...                     sensitive=True)
        >>> result.ok
        True
    """

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self.timeout_seconds = timeout_seconds

    def run(
        self,
        name: str,
        *args: str,
        timeout: float | None = None,
        sensitive: bool = False,
    ) -> CommandResult:
        """Run a program to completion.

        Args:
            name: Program to execute
            *args: Program arguments
            timeout: Override of the default timeout (seconds)
            sensitive: Keep arguments out of the log

        Returns:
            CommandResult with captured output and exit code

        Raises:
            CommandTimeout: If the program did not exit in time
        """
        argv = (name, *args)
        timeout = self.timeout_seconds if timeout is None else timeout
        shown = name if sensitive else " ".join(argv)
        logger.info(f"Run command: {shown}")

        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.error(f"Command {name} timed out after {timeout}s")
            raise CommandTimeout(name, timeout) from e
        except OSError as e:
            logger.error(f"Could not start {name}: {e}")
            return CommandResult(
                args=argv, stdout="", stderr=str(e), exit_code=DEFAULT_FAILED_CODE
            )

        result = CommandResult(
            args=argv,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )
        if result.ok:
            logger.info(f"Command {name} exited with 0")
        else:
            logger.warning(
                f"Command {name} exited with {result.exit_code}",
                extra={"stderr": result.stderr.strip()},
            )
        return result

    def launch(
        self,
        name: str,
        *args: str,
        log_path: str | Path | None = None,
    ) -> subprocess.Popen:
        """Spawn a detached long-running program.

        Returns as soon as the OS has created the process. The child gets its
        own session (POSIX) or process group (Windows) so signals aimed at
        this process do not reach it.

        Args:
            name: Program to execute
            *args: Program arguments
            log_path: File that receives the child's stdout and stderr

        Returns:
            Handle of the spawned process

        Raises:
            OSError: If the program cannot be spawned
        """
        argv = [name, *args]
        logger.info(f"Launch process: {' '.join(argv)}")

        kwargs: dict = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        output: IO | int = subprocess.DEVNULL
        if log_path is not None:
            output = open(log_path, "ab")
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT if log_path is not None else subprocess.DEVNULL,
                **kwargs,
            )
        finally:
            if log_path is not None:
                output.close()

        logger.info(f"Process {name} started with pid {process.pid}")
        return process
