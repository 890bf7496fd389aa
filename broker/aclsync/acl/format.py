"""
Line model for the Mosquitto ACL file.

The broker reads a line-oriented file of the shape:

    user <username>
    topic [read|write|readwrite] <topic-name>

This module handles:
- Access token resolution from read/write flags
- Rendering of user and topic lines
- Classification of existing lines
- Block tracking (which user's block a line belongs to)
- Parsing a whole file into UserBlocks for inspection

Invariants:
    - Rendered lines are bit-exact with what the broker parses
    - A topic line is identified by its trailing whitespace-delimited token
    - A user block ends at a blank line, the next user line, or end of file
    - Lines outside any block are never interpreted, only carried along
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

USER_KEYWORD = "user"
TOPIC_KEYWORD = "topic"


class Access(Enum):
    """Access token of a topic line."""

    READ = "read"
    WRITE = "write"
    READWRITE = "readwrite"
    UNSPECIFIED = ""

    @classmethod
    def from_flags(cls, can_read: bool, can_write: bool) -> Access:
        """Resolve read/write flags to an access token."""
        if can_read and can_write:
            return cls.READWRITE
        if can_read:
            return cls.READ
        if can_write:
            return cls.WRITE
        return cls.UNSPECIFIED

    @classmethod
    def from_token(cls, token: str) -> Access:
        try:
            return cls(token)
        except ValueError:
            return cls.UNSPECIFIED


@dataclass(frozen=True)
class TopicPermission:
    """A single `topic` line.

    Attributes:
        topic: Topic filter the grant applies to
        access: Granted access
    """

    topic: str
    access: Access = Access.UNSPECIFIED

    def render(self) -> str:
        """Render as an ACL line (without newline)."""
        if self.access is Access.UNSPECIFIED:
            return f"{TOPIC_KEYWORD} {self.topic}"
        return f"{TOPIC_KEYWORD} {self.access.value} {self.topic}"

    @classmethod
    def parse(cls, line: str) -> TopicPermission:
        """Parse a topic line.

        Raises:
            ValueError: If the line is not a topic line
        """
        if not is_topic_line(line):
            raise ValueError(f"Not a topic line: {line!r}")
        parts = line.split()
        access = Access.from_token(parts[1]) if len(parts) > 2 else Access.UNSPECIFIED
        return cls(topic=parts[-1], access=access)


@dataclass
class UserBlock:
    """A `user` line and the topic lines that follow it."""

    username: str
    topics: list[TopicPermission] = field(default_factory=list)


def validate_name(value: str, kind: str) -> None:
    """Reject names that would corrupt the line format.

    Raises:
        ValueError: If the name is empty or contains whitespace
    """
    if not value:
        raise ValueError(f"{kind} must not be empty")
    if any(c.isspace() for c in value):
        raise ValueError(f"{kind} must not contain whitespace: {value!r}")


def render_user_line(username: str) -> str:
    return f"{USER_KEYWORD} {username}"


def _keyword(line: str) -> str | None:
    parts = line.split(None, 1)
    return parts[0] if parts else None


def is_user_line(line: str) -> bool:
    return _keyword(line) == USER_KEYWORD and len(line.split()) >= 2


def is_topic_line(line: str) -> bool:
    return _keyword(line) == TOPIC_KEYWORD and len(line.split()) >= 2


def is_blank(line: str) -> bool:
    return not line.strip()


def user_of(line: str) -> str:
    """Username named by a user line."""
    return line.split(None, 1)[1].strip()


def topic_of(line: str) -> str:
    """Trailing token of a topic line."""
    return line.split()[-1]


def matches_topic(line: str, topic: str) -> bool:
    """True if line is a topic line for exactly this topic, whatever its access."""
    return is_topic_line(line) and topic_of(line) == topic


class ScanState(Enum):
    OUTSIDE = "outside"
    INSIDE_USER = "inside_user"


class BlockScanner:
    """Tracks which user block the current line belongs to.

    Feed lines top to bottom. A user line opens that user's block (the user
    line itself belongs to it); a blank line closes the current block.

    Example:
        >>> scanner = BlockScanner()
        >>> for line in ["user alice", "topic read a", "", "topic read b"]:
        ...     _ = scanner.feed(line)
        ...     print(scanner.state, scanner.current_user)
        ScanState.INSIDE_USER alice
        ScanState.INSIDE_USER alice
        ScanState.OUTSIDE None
        ScanState.OUTSIDE None
    """

    def __init__(self) -> None:
        self.state = ScanState.OUTSIDE
        self.current_user: str | None = None

    def feed(self, line: str) -> ScanState:
        if is_user_line(line):
            self.state = ScanState.INSIDE_USER
            self.current_user = user_of(line)
        elif is_blank(line):
            self.state = ScanState.OUTSIDE
            self.current_user = None
        return self.state

    def inside(self, username: str) -> bool:
        return self.state is ScanState.INSIDE_USER and self.current_user == username


def parse_blocks(lines: list[str]) -> list[UserBlock]:
    """Parse ACL lines into user blocks, in file order.

    Topic lines outside any block and unknown directives are ignored.
    """
    blocks: list[UserBlock] = []
    scanner = BlockScanner()
    for line in lines:
        was_user = is_user_line(line)
        scanner.feed(line)
        if was_user:
            blocks.append(UserBlock(username=scanner.current_user or ""))
        elif scanner.state is ScanState.INSIDE_USER and is_topic_line(line):
            blocks[-1].topics.append(TopicPermission.parse(line))
    return blocks


def split_lines(content: str) -> list[str]:
    return content.splitlines()


def join_lines(lines: list[str]) -> str:
    """Join lines with LF and a trailing newline (empty content stays empty)."""
    if not lines:
        return ""
    return "\n".join(lines) + "\n"
