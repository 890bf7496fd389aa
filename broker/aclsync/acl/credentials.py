"""
Broker credential store for mosquitto-sync.

The password file format and its hashing belong to mosquitto_passwd; this
module only invokes the utility and turns failures into typed errors.

Invariants:
    - Passwords are passed as arguments but never logged
    - Writes to one password file are serialised across CredentialStore instances
    - A non-zero exit of the utility is always surfaced
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..errors import CredentialWriteFailed
from ..process.runner import CommandRunner
from .format import validate_name
from .store import _lock_for

logger = logging.getLogger(__name__)


class CredentialStore:
    """Writes username:password entries via mosquitto_passwd.

    Example:
        >>> store = CredentialStore("/etc/mosquitto/passwordfile", CommandRunner())
        >>> store.set_password("alice@example.com", "s3cret-pass")
    """

    def __init__(
        self,
        path: str | Path,
        runner: CommandRunner,
        passwd_binary: str = "mosquitto_passwd",
    ) -> None:
        self.path = Path(path)
        self.runner = runner
        self.passwd_binary = passwd_binary
        self._lock = _lock_for(self.path.resolve())

    def set_password(self, username: str, secret: str) -> None:
        """Add or update the user's entry.

        Creates the password file if it does not exist yet.

        Raises:
            ValueError: If the username is not a valid broker username
            CredentialWriteFailed: If the utility exits non-zero
            CommandTimeout: If the utility hangs
        """
        validate_name(username, "username")
        with self._lock:
            args = ["-b"]
            if not self.path.exists():
                args.insert(0, "-c")
            result = self.runner.run(
                self.passwd_binary,
                *args,
                str(self.path),
                username,
                secret,
                sensitive=True,
            )
        if not result.ok:
            raise CredentialWriteFailed(username, result.exit_code, result.stderr)
        logger.info(f"Credentials written for {username}")

    def delete_user(self, username: str) -> None:
        """Remove the user's entry.

        Raises:
            CredentialWriteFailed: If the utility exits non-zero
        """
        validate_name(username, "username")
        with self._lock:
            result = self.runner.run(self.passwd_binary, "-D", str(self.path), username)
        if not result.ok:
            raise CredentialWriteFailed(username, result.exit_code, result.stderr)
        logger.info(f"Credentials removed for {username}")
