"""
Synchronization facade for mosquitto-sync.

BrokerSync is the single entry point for business events. It sequences the
directory, the ACL store, the credential store and the broker supervisor so
that the relational record and the broker files never diverge for longer
than one request:

    sign-up           set_password -> register_user -> insert user
    topic create      add_topic -> insert topic
    topic update      update_topic (owner's block) -> update topic
    topic delete      delete_topic (owner's block) -> delete topic
    broker toggle     persist flag -> start/stop

Invariants:
    - File-system writes come first; they are idempotent, so a failed
      relational write can be retried without leaving duplicates
    - A credential write failure aborts sign-up before anything else is written
    - ACL errors are propagated to the caller, never swallowed
    - Blocking file and process work runs off the event loop
    - The existence check, the file writes and the insert of one e-mail or of
      one owner's topics run under a single asyncio lock (one process only)

How to change safely:
    - Keep every new business event ordered files-first
    - Resolve ACL usernames from the topic owner, never from the caller
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from email.utils import parseaddr

from ..acl.credentials import CredentialStore
from ..acl.format import validate_name
from ..acl.store import AclStore
from ..config import ServerConfig
from ..errors import AccessDeniedError, ConflictError, TopicNotFoundError, ValidationError
from ..process.runner import CommandRunner
from ..process.supervisor import BrokerSupervisor
from .directory import Directory, Role, TopicRecord, UserRecord

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def is_valid_email(email: str) -> bool:
    _, address = parseaddr(email)
    return (
        address == email
        and "@" in address
        and not any(c.isspace() for c in address)
        and not address.startswith("@")
        and not address.endswith("@")
    )


def get_offset_and_limit(page: int | None, page_size: int | None) -> tuple[int, int]:
    """Translate 1-based paging into (offset, limit); no paging means everything."""
    if page is None or page_size is None:
        return 0, -1
    return (page - 1) * page_size, page_size


class BrokerSync:
    """Keeps users, topics and the broker files in step.

    Attributes:
        directory: Relational user/topic store
        acl: ACL file store
        credentials: Password file store
        supervisor: Broker process supervisor

    Example:
        >>> sync = BrokerSync.from_config(ServerConfig.from_env())
        >>> user = await sync.sign_up("alice@example.com", "s3cret-pass")
        >>> topic = await sync.create_topic(user.id, "sensors/temp", True, False)
        >>> await sync.toggle_broker(user.id, True)
    """

    def __init__(
        self,
        directory: Directory,
        acl: AclStore,
        credentials: CredentialStore,
        supervisor: BrokerSupervisor,
    ) -> None:
        self.directory = directory
        self.acl = acl
        self.credentials = credentials
        self.supervisor = supervisor
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def from_config(cls, config: ServerConfig) -> BrokerSync:
        """Build all components from configuration."""
        runner = CommandRunner(timeout_seconds=config.command.timeout_seconds)
        directory = Directory(config.database.path, config.database.busy_timeout_ms)
        directory.initialize()
        return cls(
            directory=directory,
            acl=AclStore(config.mosquitto.acl_path, config.mosquitto.acl_file_mode),
            credentials=CredentialStore(
                config.mosquitto.password_path, runner, config.mosquitto.passwd_binary
            ),
            supervisor=BrokerSupervisor(config.mosquitto, runner),
        )

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # --- Users ---

    async def sign_up(self, email: str, password: str, full_name: str = "") -> UserRecord:
        """Provision a new user in the password file, the ACL and the directory.

        Raises:
            ValidationError: If the e-mail or password is unacceptable
            ConflictError: If the e-mail is already in use
            CredentialWriteFailed: If mosquitto_passwd fails (nothing else is written)
            AclIOError: If the ACL file cannot be written
        """
        email = email.strip()
        if not is_valid_email(email):
            raise ValidationError("incorrect password or email", field_name="email")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"please input password, at least {MIN_PASSWORD_LENGTH} symbols",
                field_name="password",
            )

        async with self._lock_for(f"user:{email}"):
            if await self.directory.email_exists(email):
                raise ConflictError("email already in use")
            await asyncio.to_thread(self.credentials.set_password, email, password)
            await asyncio.to_thread(self.acl.register_user, email)
            user = await self.directory.create_user(email, password, full_name)

        logger.info("User signed up", extra={"user_id": user.id})
        return user

    async def get_user(self, user_id: int, client_id: int, role: Role = Role.USER) -> UserRecord:
        if role is not Role.SUPER_ADMIN and user_id != client_id:
            raise AccessDeniedError()
        return await self.directory.get_user_by_id(user_id)

    # --- Topics ---

    async def create_topic(
        self,
        client_id: int,
        name: str,
        can_read: bool,
        can_write: bool,
    ) -> TopicRecord:
        """Grant a new topic to the calling user.

        Raises:
            RecordNotFoundError: If the caller does not exist
            ValidationError: If the topic name is unacceptable
            ConflictError: If the caller already owns a topic with this name
            UserNotFoundError: If the caller has no ACL block
        """
        _validate_topic_name(name)
        user = await self.directory.get_user_by_id(client_id)
        async with self._lock_for(f"topics:{user.id}"):
            if await self.directory.topic_exists(user.id, name):
                raise ConflictError("topic is already exist")
            await asyncio.to_thread(self.acl.add_topic, user.email, name, can_read, can_write)
            topic = await self.directory.create_topic(user.id, name, can_read, can_write)

        logger.info("Topic created", extra={"topic_id": topic.id, "user_id": user.id})
        return topic

    async def get_topic(self, topic_id: int, client_id: int, role: Role = Role.USER) -> TopicRecord:
        topic = await self.directory.get_topic_by_id(topic_id)
        _check_owner(topic, client_id, role)
        return topic

    async def list_topics(
        self,
        client_id: int,
        role: Role = Role.USER,
        page: int | None = None,
        page_size: int | None = None,
    ) -> tuple[list[TopicRecord], int]:
        """Own topics for users, every topic for super-admins."""
        offset, limit = get_offset_and_limit(page, page_size)
        owner = None if role is Role.SUPER_ADMIN else client_id
        return await self.directory.list_topics(owner, offset=offset, limit=limit)

    async def update_topic(
        self,
        topic_id: int,
        client_id: int,
        can_read: bool,
        can_write: bool,
        role: Role = Role.USER,
    ) -> TopicRecord:
        """Change a topic's permissions in the owner's ACL block and the directory.

        A topic created without any access has no ACL line yet; granting it
        access adds the line.

        Raises:
            RecordNotFoundError: If the topic or its owner does not exist
            AccessDeniedError: If the caller neither owns the topic nor is super-admin
            UserNotFoundError: If the owner has no ACL block
        """
        topic = await self.directory.get_topic_by_id(topic_id)
        _check_owner(topic, client_id, role)
        owner = await self.directory.get_user_by_id(topic.user_id)

        async with self._lock_for(f"topics:{owner.id}"):
            # Re-read under the lock; a concurrent delete raises RecordNotFoundError
            topic = await self.directory.get_topic_by_id(topic_id)
            try:
                await asyncio.to_thread(
                    self.acl.update_topic, owner.email, topic.name, can_read, can_write
                )
            except TopicNotFoundError:
                logger.info(f"No ACL line for topic {topic.name} yet, adding it")
                await asyncio.to_thread(
                    self.acl.add_topic, owner.email, topic.name, can_read, can_write
                )
            return await self.directory.update_topic_permissions(topic.id, can_read, can_write)

    async def delete_topic(self, topic_id: int, client_id: int, role: Role = Role.USER) -> None:
        """Remove a topic from the owner's ACL block and the directory.

        Raises:
            RecordNotFoundError: If the topic or its owner does not exist
            AccessDeniedError: If the caller neither owns the topic nor is super-admin
            UserNotFoundError: If the owner has no ACL block
        """
        topic = await self.directory.get_topic_by_id(topic_id)
        _check_owner(topic, client_id, role)
        owner = await self.directory.get_user_by_id(topic.user_id)

        async with self._lock_for(f"topics:{owner.id}"):
            topic = await self.directory.get_topic_by_id(topic_id)
            await asyncio.to_thread(self.acl.delete_topic, owner.email, topic.name)
            await self.directory.delete_topic(topic.id)

        logger.info("Topic deleted", extra={"topic_id": topic.id, "user_id": owner.id})

    # --- Broker ---

    async def toggle_broker(self, user_id: int, enabled: bool) -> bool:
        """Persist the desired broker state, then start or stop the broker.

        Returns:
            Whether the supervisor holds a running broker afterwards

        Raises:
            RecordNotFoundError: If the user does not exist
            SupervisorError: If the broker cannot be started or stopped
                (the desired state stays persisted)
        """
        await self.directory.set_mosquitto_on(user_id, enabled)
        if enabled:
            await asyncio.to_thread(self.supervisor.start)
        else:
            await asyncio.to_thread(self.supervisor.stop)
        return self.supervisor.is_running

    async def shutdown(self) -> None:
        """Stop a broker started by this process, leaving foreign ones alone."""
        if self.supervisor.is_running:
            await asyncio.to_thread(self.supervisor.stop)


def _check_owner(topic: TopicRecord, client_id: int, role: Role) -> None:
    if role is not Role.SUPER_ADMIN and topic.user_id != client_id:
        raise AccessDeniedError()


def _validate_topic_name(name: str) -> None:
    try:
        validate_name(name, "topic")
    except ValueError as e:
        raise ValidationError(str(e), field_name="name") from e
