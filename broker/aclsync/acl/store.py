"""
ACL file store for mosquitto-sync.

This module owns the broker's ACL file and provides the only write path to it:
- register_user: add a `user` block
- add_topic / update_topic / delete_topic: mutate one topic line in a block
- snapshot: locked read of the parsed blocks

Every operation is a read-modify-write performed under one exclusive lock,
and every write is published by renaming a fully written sibling temporary
file over the ACL file.

Invariants:
    - One lock per resolved ACL path, shared by all AclStore instances in the process
    - Exactly one block per username; registration of an existing user writes nothing
    - At most one topic line per topic within a block
    - Lines not targeted by a mutation keep their order and content
    - The broker never observes a partially written file
    - Failed operations leave the file untouched

How to change safely:
    - New operations must go through _mutate so they hold the lock
    - Never write the ACL path directly; always use atomic_replace
    - Test against fixtures with at least two user blocks
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path

from ..errors import AclIOError, TopicNotFoundError, UserNotFoundError
from .format import (
    Access,
    BlockScanner,
    TopicPermission,
    UserBlock,
    is_user_line,
    join_lines,
    matches_topic,
    parse_blocks,
    render_user_line,
    split_lines,
    user_of,
    validate_name,
)

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_path_locks: dict[Path, threading.Lock] = {}


def _lock_for(path: Path) -> threading.Lock:
    with _registry_lock:
        lock = _path_locks.get(path)
        if lock is None:
            lock = threading.Lock()
            _path_locks[path] = lock
        return lock


def atomic_replace(path: Path, content: str, mode: int = 0o644) -> None:
    """Write content to a sibling temporary file and rename it over path.

    The rename is the only publish point. If anything fails before it, the
    temporary file is removed and the target keeps its previous content.

    Args:
        path: Target file
        content: Full new content
        mode: Permission bits for the published file

    Raises:
        AclIOError: If the temporary file cannot be written or renamed
    """
    tmp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            newline="",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tf:
            tmp_path = Path(tf.name)
            tf.write(content)
            tf.flush()
            os.fsync(tf.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        raise AclIOError(f"Could not write {path}: {e}", path=str(path)) from e
    finally:
        if tmp_path is not None:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass


class AclStore:
    """Locked, atomic mutations of a Mosquitto ACL file.

    All methods are synchronous and block while another thread holds the
    lock for the same file. Callers on an event loop should dispatch them
    with asyncio.to_thread.

    Thread safety:
        Safe across threads of one process. Separate processes writing the
        same file are not coordinated.

    Example:
        >>> store = AclStore("/etc/mosquitto/mosquitto.acl")
        >>> store.register_user("alice")
        >>> store.add_topic("alice", "sensors/temp", can_read=True, can_write=False)
        >>> store.update_topic("alice", "sensors/temp", can_read=True, can_write=True)
        >>> store.delete_topic("alice", "sensors/temp")
    """

    def __init__(self, path: str | Path, file_mode: int = 0o644) -> None:
        """Initialize the store.

        Args:
            path: ACL file path (created on first write if absent)
            file_mode: Permission bits applied on every rewrite
        """
        self.path = Path(path)
        self.file_mode = file_mode
        self._lock = _lock_for(self.path.resolve())

    def _read_lines(self) -> list[str]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            raise AclIOError(f"Could not read {self.path}: {e}", path=str(self.path)) from e
        return split_lines(content)

    def _mutate(self, name: str, mutation: Callable[[list[str]], list[str] | None]) -> bool:
        """Run one read-modify-write under the lock.

        The mutation returns the new lines, or None when nothing is to be
        written. Exceptions raised by the mutation abort before any write.

        Returns:
            True if the file was rewritten
        """
        with self._lock:
            lines = self._read_lines()
            new_lines = mutation(lines)
            if new_lines is None:
                return False
            atomic_replace(self.path, join_lines(new_lines), self.file_mode)
        logger.debug(f"ACL {name} written to {self.path}")
        return True

    def register_user(self, username: str) -> bool:
        """Append a user block unless the user line already exists.

        Args:
            username: Broker username

        Returns:
            True if the user was added, False if it was already present

        Raises:
            ValueError: If the username would corrupt the file format
            AclIOError: If the file cannot be read or written
        """
        validate_name(username, "username")
        user_line = render_user_line(username)

        def mutation(lines: list[str]) -> list[str] | None:
            if user_line in lines:
                return None
            return lines + ["", user_line]

        written = self._mutate("register_user", mutation)
        if written:
            logger.info(f"Registered ACL user {username}")
        else:
            logger.debug(f"ACL user {username} already registered")
        return written

    def add_topic(self, username: str, topic: str, can_read: bool, can_write: bool) -> bool:
        """Grant a topic to a user.

        The new line becomes the first topic entry of the user's block. If
        the block already holds a line for the topic, that line is replaced
        in place instead.

        Args:
            username: Broker username
            topic: Topic filter
            can_read: Grant subscribe access
            can_write: Grant publish access

        Returns:
            True if the file was rewritten, False if both flags are false

        Raises:
            ValueError: If a name would corrupt the file format
            UserNotFoundError: If no block exists for the user
            AclIOError: If the file cannot be read or written
        """
        validate_name(username, "username")
        validate_name(topic, "topic")
        access = Access.from_flags(can_read, can_write)
        if access is Access.UNSPECIFIED:
            logger.info(f"No access requested for topic {topic} of {username}, ACL unchanged")
            return False
        topic_line = TopicPermission(topic, access).render()

        def mutation(lines: list[str]) -> list[str]:
            existing = _find_topic_lines(lines, username, topic)
            if existing:
                out = list(lines)
                out[existing[0]] = topic_line
                return out

            scanner = BlockScanner()
            for i, line in enumerate(lines):
                scanner.feed(line)
                if is_user_line(line) and scanner.inside(username):
                    return lines[: i + 1] + [topic_line] + lines[i + 1 :]
            raise UserNotFoundError(username)

        self._mutate("add_topic", mutation)
        logger.info(f"Added ACL topic {topic} ({access.value}) for {username}")
        return True

    def update_topic(self, username: str, topic: str, can_read: bool, can_write: bool) -> None:
        """Replace the access of an existing topic line in the user's block.

        With both flags false the line is rendered without an access token.

        Raises:
            ValueError: If a name would corrupt the file format
            UserNotFoundError: If no block exists for the user
            TopicNotFoundError: If the block has no line for the topic
            AclIOError: If the file cannot be read or written
        """
        validate_name(username, "username")
        validate_name(topic, "topic")
        topic_line = TopicPermission(topic, Access.from_flags(can_read, can_write)).render()

        def mutation(lines: list[str]) -> list[str]:
            if not _has_user(lines, username):
                raise UserNotFoundError(username)
            targets = _find_topic_lines(lines, username, topic)
            if not targets:
                raise TopicNotFoundError(username, topic)
            out = list(lines)
            for i in targets:
                out[i] = topic_line
            return out

        self._mutate("update_topic", mutation)
        logger.info(f"Updated ACL topic line for {username}: {topic_line}")

    def delete_topic(self, username: str, topic: str) -> int:
        """Drop every line for the topic from the user's block.

        Deleting a topic that is not present still rewrites the file and is
        not an error.

        Returns:
            Number of lines removed

        Raises:
            ValueError: If a name would corrupt the file format
            UserNotFoundError: If no block exists for the user
            AclIOError: If the file cannot be read or written
        """
        validate_name(username, "username")
        validate_name(topic, "topic")
        removed = 0

        def mutation(lines: list[str]) -> list[str]:
            nonlocal removed
            if not _has_user(lines, username):
                raise UserNotFoundError(username)
            targets = set(_find_topic_lines(lines, username, topic))
            removed = len(targets)
            return [line for i, line in enumerate(lines) if i not in targets]

        self._mutate("delete_topic", mutation)
        if removed:
            logger.info(f"Deleted ACL topic {topic} for {username}")
        else:
            logger.info(f"ACL topic {topic} for {username} was already absent")
        return removed

    def snapshot(self) -> list[UserBlock]:
        """Parse the current file into user blocks under the lock."""
        with self._lock:
            lines = self._read_lines()
        return parse_blocks(lines)


def _has_user(lines: list[str], username: str) -> bool:
    return any(is_user_line(line) and user_of(line) == username for line in lines)


def _find_topic_lines(lines: list[str], username: str, topic: str) -> list[int]:
    """Indices of topic lines for topic inside username's block(s)."""
    found = []
    scanner = BlockScanner()
    for i, line in enumerate(lines):
        scanner.feed(line)
        if scanner.inside(username) and matches_topic(line, topic):
            found.append(i)
    return found
