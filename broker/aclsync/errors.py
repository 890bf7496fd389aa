"""
Error types for mosquitto-sync.

This module defines every exception raised by the ACL engine and the
synchronization facade:
- BrokerSyncError: Base exception
- AclIOError: ACL file could not be read or written
- UserNotFoundError / TopicNotFoundError: Mutation target absent from the ACL file
- CredentialWriteFailed: mosquitto_passwd exited non-zero
- SupervisorError: Broker process could not be spawned or stopped
- CommandTimeout: External command exceeded its deadline

Invariants:
    - All errors inherit from BrokerSyncError
    - Errors carry a stable code for programmatic handling
    - Error messages never include secrets
"""

from __future__ import annotations

from typing import Any


class BrokerSyncError(Exception):
    """Base exception for all mosquitto-sync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "BROKER_SYNC_ERROR"
        self.details = details or {}


class AclIOError(BrokerSyncError):
    """ACL file could not be read (other than not-found) or written."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, code="ACL_IO_ERROR", details={"path": path})
        self.path = path


class UserNotFoundError(BrokerSyncError):
    """Mutation targets a username absent from the ACL file."""

    def __init__(self, username: str) -> None:
        super().__init__(
            f"User not found in ACL file: {username}",
            code="USER_NOT_FOUND",
            details={"username": username},
        )
        self.username = username


class TopicNotFoundError(BrokerSyncError):
    """Update targets a topic absent from the user's block."""

    def __init__(self, username: str, topic: str) -> None:
        super().__init__(
            f"Topic {topic} not found for user {username}",
            code="TOPIC_NOT_FOUND",
            details={"username": username, "topic": topic},
        )
        self.username = username
        self.topic = topic


class CredentialWriteFailed(BrokerSyncError):
    """The password utility exited with a non-zero status.

    Attributes:
        exit_code: Exit status of the utility
        stderr: Captured standard error
    """

    def __init__(self, username: str, exit_code: int, stderr: str) -> None:
        super().__init__(
            f"Could not write credentials for {username}: {stderr.strip() or 'exit code ' + str(exit_code)}",
            code="CREDENTIAL_WRITE_FAILED",
            details={"username": username, "exit_code": exit_code},
        )
        self.exit_code = exit_code
        self.stderr = stderr


class SupervisorError(BrokerSyncError):
    """Broker process failed to spawn or could not be stopped."""

    def __init__(self, message: str, binary: str | None = None) -> None:
        super().__init__(message, code="SUPERVISOR_ERROR", details={"binary": binary})
        self.binary = binary


class CommandTimeout(BrokerSyncError):
    """External command did not finish before its deadline."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(
            f"Command {command} timed out after {timeout}s",
            code="COMMAND_TIMEOUT",
            details={"command": command, "timeout": timeout},
        )
        self.command = command
        self.timeout = timeout


class RecordNotFoundError(BrokerSyncError):
    """Relational record (user or topic) does not exist."""

    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(
            f"{kind} not found: {key}",
            code="NOT_FOUND",
            details={"kind": kind, "key": key},
        )
        self.kind = kind
        self.key = key


class AccessDeniedError(BrokerSyncError):
    """Caller may not act on the requested record."""

    def __init__(self, message: str = "access denied") -> None:
        super().__init__(message, code="ACCESS_DENIED")


class ValidationError(BrokerSyncError):
    """Request input failed validation."""

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"field": field_name})
        self.field_name = field_name


class ConflictError(BrokerSyncError):
    """Record already exists (e-mail in use, duplicate topic)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFLICT")
