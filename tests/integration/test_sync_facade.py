"""
Integration tests for BrokerSync.

Runs the facade against a real SQLite directory and a real ACL file, with
mosquitto_passwd and the broker replaced by fake runners.

Tests cover:
- Sign-up ordering and failure atomicity
- Topic create/update/delete reflected in the ACL file
- Ownership checks and super-admin access
- Broker toggle
- Concurrent requests
"""

import asyncio
import tempfile
from pathlib import Path

import pytest

from broker.aclsync.acl.credentials import CredentialStore
from broker.aclsync.acl.format import Access, TopicPermission
from broker.aclsync.acl.store import AclStore
from broker.aclsync.config import MosquittoConfig
from broker.aclsync.errors import (
    AccessDeniedError,
    ConflictError,
    CredentialWriteFailed,
    RecordNotFoundError,
    SupervisorError,
    ValidationError,
)
from broker.aclsync.process.supervisor import BrokerSupervisor
from broker.aclsync.sync.directory import Directory, Role, verify_password
from broker.aclsync.sync.facade import BrokerSync, get_offset_and_limit, is_valid_email


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sync(data_dir, broker_runner):
    """BrokerSync over temporary files; broker_runner stands in for both utilities."""
    config = MosquittoConfig(config_dir=str(data_dir), stop_timeout_seconds=5)
    directory = Directory(str(data_dir / "broker.db"))
    directory.initialize()
    facade = BrokerSync(
        directory=directory,
        acl=AclStore(config.acl_path),
        credentials=CredentialStore(config.password_path, broker_runner),
        supervisor=BrokerSupervisor(config, broker_runner),
    )
    yield facade
    if facade.supervisor.is_running:
        facade.supervisor.stop()


def acl_text(sync):
    return sync.acl.path.read_text() if sync.acl.path.exists() else ""


async def sign_up_users(sync):
    """Sign up alice and bob, plus a super-admin without broker entries."""
    alice = await sync.sign_up("alice@example.com", "s3cret-pass")
    bob = await sync.sign_up("bob@example.com", "s3cret-pass")
    admin = await sync.directory.create_user(
        "admin@example.com", "s3cret-pass", role=Role.SUPER_ADMIN
    )
    return alice, bob, admin


class TestHelpers:
    """Tests for request helpers."""

    @pytest.mark.parametrize(
        "email,valid",
        [
            ("alice@example.com", True),
            ("alice", False),
            ("@example.com", False),
            ("alice@", False),
            ("alice smith@example.com", False),
            ("Alice <alice@example.com>", False),
        ],
    )
    def test_is_valid_email(self, email, valid):
        assert is_valid_email(email) is valid

    def test_offset_and_limit(self):
        assert get_offset_and_limit(None, None) == (0, -1)
        assert get_offset_and_limit(3, 10) == (20, 10)


class TestSignUp:
    """Tests for user provisioning."""

    @pytest.mark.asyncio
    async def test_sign_up_writes_all_stores(self, sync, broker_runner):
        user = await sync.sign_up("alice@example.com", "s3cret-pass", "Alice")

        assert broker_runner.calls[0]["argv"][-2:] == ("alice@example.com", "s3cret-pass")
        assert acl_text(sync) == "\nuser alice@example.com\n"
        stored = await sync.directory.get_user_by_email("alice@example.com")
        assert stored.id == user.id
        assert stored.full_name == "Alice"
        assert stored.role is Role.USER

        password_hash = await sync.directory.get_password_hash(user.id)
        assert password_hash != "s3cret-pass"
        assert verify_password("s3cret-pass", password_hash)

    @pytest.mark.asyncio
    async def test_credential_failure_aborts(self, sync, broker_runner):
        """Nothing is written to the ACL or the directory."""
        broker_runner.exit_code = 1
        broker_runner.stderr = "Error: Unable to open file"

        with pytest.raises(CredentialWriteFailed):
            await sync.sign_up("alice@example.com", "s3cret-pass")

        assert acl_text(sync) == ""
        assert not await sync.directory.email_exists("alice@example.com")

    @pytest.mark.asyncio
    async def test_duplicate_email(self, sync, broker_runner):
        await sync.sign_up("alice@example.com", "s3cret-pass")
        broker_runner.calls.clear()

        with pytest.raises(ConflictError):
            await sync.sign_up("alice@example.com", "other-pass")
        assert broker_runner.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "email,password",
        [("not-an-email", "s3cret-pass"), ("alice@example.com", "short")],
    )
    async def test_invalid_input(self, sync, broker_runner, email, password):
        with pytest.raises(ValidationError):
            await sync.sign_up(email, password)
        assert broker_runner.calls == []
        assert acl_text(sync) == ""

    @pytest.mark.asyncio
    async def test_concurrent_sign_up_same_email(self, sync, broker_runner):
        """Exactly one of two simultaneous sign-ups writes credentials."""
        results = await asyncio.gather(
            sync.sign_up("alice@example.com", "winner-pass"),
            sync.sign_up("alice@example.com", "loser-pass1"),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, ConflictError)]
        users = [r for r in results if not isinstance(r, Exception)]
        assert len(conflicts) == 1
        assert len(users) == 1
        assert len(broker_runner.calls) == 1
        assert acl_text(sync) == "\nuser alice@example.com\n"

        written = broker_runner.calls[0]["argv"][-1]
        password_hash = await sync.directory.get_password_hash(users[0].id)
        assert verify_password(written, password_hash)


class TestTopics:
    """Tests for topic lifecycle through the facade."""

    @pytest.mark.asyncio
    async def test_create_topic(self, sync):
        alice, _, _ = await sign_up_users(sync)

        topic = await sync.create_topic(alice.id, "sensors/temp", True, False)

        assert topic.user_id == alice.id
        assert "user alice@example.com\ntopic read sensors/temp\n" in acl_text(sync)

    @pytest.mark.asyncio
    async def test_create_duplicate_topic(self, sync):
        alice, _, _ = await sign_up_users(sync)
        await sync.create_topic(alice.id, "sensors/temp", True, False)
        before = acl_text(sync)

        with pytest.raises(ConflictError):
            await sync.create_topic(alice.id, "sensors/temp", False, True)
        assert acl_text(sync) == before

    @pytest.mark.asyncio
    async def test_same_topic_for_two_users(self, sync):
        alice, bob, _ = await sign_up_users(sync)
        await sync.create_topic(alice.id, "shared", True, False)
        await sync.create_topic(bob.id, "shared", False, True)

        blocks = {b.username: b.topics for b in sync.acl.snapshot()}
        assert blocks["alice@example.com"] == [TopicPermission("shared", Access.READ)]
        assert blocks["bob@example.com"] == [TopicPermission("shared", Access.WRITE)]

    @pytest.mark.asyncio
    async def test_concurrent_create_same_topic(self, sync):
        """The ACL line matches whichever request the directory accepted."""
        alice, _, _ = await sign_up_users(sync)

        results = await asyncio.gather(
            sync.create_topic(alice.id, "sensors/temp", True, False),
            sync.create_topic(alice.id, "sensors/temp", False, True),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConflictError) for r in results) == 1
        (topic,) = [r for r in results if not isinstance(r, Exception)]
        blocks = {b.username: b.topics for b in sync.acl.snapshot()}
        expected = Access.from_flags(topic.can_read, topic.can_write)
        assert blocks["alice@example.com"] == [TopicPermission("sensors/temp", expected)]

    @pytest.mark.asyncio
    async def test_concurrent_update_and_delete(self, sync):
        """A topic deleted while being updated leaves no ACL line behind."""
        alice, _, _ = await sign_up_users(sync)
        topic = await sync.create_topic(alice.id, "sensors/temp", True, False)

        await asyncio.gather(
            sync.update_topic(topic.id, alice.id, True, True),
            sync.delete_topic(topic.id, alice.id),
            return_exceptions=True,
        )

        with pytest.raises(RecordNotFoundError):
            await sync.directory.get_topic_by_id(topic.id)
        assert "sensors/temp" not in acl_text(sync)

    @pytest.mark.asyncio
    async def test_invalid_topic_name(self, sync):
        alice, _, _ = await sign_up_users(sync)
        with pytest.raises(ValidationError):
            await sync.create_topic(alice.id, "two words", True, False)

    @pytest.mark.asyncio
    async def test_update_topic(self, sync):
        alice, _, _ = await sign_up_users(sync)
        topic = await sync.create_topic(alice.id, "sensors/temp", True, False)

        updated = await sync.update_topic(topic.id, alice.id, True, True)

        assert updated.can_read and updated.can_write
        assert "topic readwrite sensors/temp" in acl_text(sync)
        assert "topic read sensors/temp" not in acl_text(sync)

    @pytest.mark.asyncio
    async def test_update_topic_created_without_access(self, sync):
        """A topic with no ACL line gets one when access is granted."""
        alice, _, _ = await sign_up_users(sync)
        topic = await sync.create_topic(alice.id, "sensors/temp", False, False)
        assert "sensors/temp" not in acl_text(sync)

        await sync.update_topic(topic.id, alice.id, True, False)

        assert "user alice@example.com\ntopic read sensors/temp\n" in acl_text(sync)

    @pytest.mark.asyncio
    async def test_update_by_other_user_denied(self, sync):
        alice, bob, _ = await sign_up_users(sync)
        topic = await sync.create_topic(alice.id, "sensors/temp", True, False)
        before = acl_text(sync)

        with pytest.raises(AccessDeniedError):
            await sync.update_topic(topic.id, bob.id, True, True)
        assert acl_text(sync) == before

    @pytest.mark.asyncio
    async def test_super_admin_updates_owner_block(self, sync):
        """The owner's block changes, not the admin's."""
        alice, _, admin = await sign_up_users(sync)
        topic = await sync.create_topic(alice.id, "sensors/temp", True, False)

        await sync.update_topic(topic.id, admin.id, False, True, role=Role.SUPER_ADMIN)

        blocks = {b.username: b.topics for b in sync.acl.snapshot()}
        assert blocks["alice@example.com"] == [TopicPermission("sensors/temp", Access.WRITE)]
        assert "admin@example.com" not in blocks

    @pytest.mark.asyncio
    async def test_delete_topic(self, sync):
        alice, _, _ = await sign_up_users(sync)
        topic = await sync.create_topic(alice.id, "sensors/temp", True, False)

        await sync.delete_topic(topic.id, alice.id)

        assert "sensors/temp" not in acl_text(sync)
        with pytest.raises(RecordNotFoundError):
            await sync.get_topic(topic.id, alice.id)

    @pytest.mark.asyncio
    async def test_get_topic_of_other_user_denied(self, sync):
        alice, bob, _ = await sign_up_users(sync)
        topic = await sync.create_topic(alice.id, "sensors/temp", True, False)

        with pytest.raises(AccessDeniedError):
            await sync.get_topic(topic.id, bob.id)
        assert (await sync.get_topic(topic.id, bob.id, Role.SUPER_ADMIN)).id == topic.id

    @pytest.mark.asyncio
    async def test_list_topics(self, sync):
        alice, bob, admin = await sign_up_users(sync)
        for i in range(5):
            await sync.create_topic(alice.id, f"a/{i}", True, False)
        await sync.create_topic(bob.id, "b/0", True, False)

        own, total = await sync.list_topics(alice.id, page=2, page_size=2)
        assert total == 5
        assert [t.name for t in own] == ["a/2", "a/3"]

        everything, total = await sync.list_topics(admin.id, Role.SUPER_ADMIN)
        assert total == 6
        assert len(everything) == 6

    @pytest.mark.asyncio
    async def test_concurrent_creates(self, sync):
        """Concurrent requests for different users all reach the ACL file."""
        alice, bob, _ = await sign_up_users(sync)

        await asyncio.gather(
            *(sync.create_topic(alice.id, f"a/{i}", True, False) for i in range(5)),
            *(sync.create_topic(bob.id, f"b/{i}", False, True) for i in range(5)),
        )

        blocks = {b.username: b.topics for b in sync.acl.snapshot()}
        assert sorted(t.topic for t in blocks["alice@example.com"]) == [f"a/{i}" for i in range(5)]
        assert sorted(t.topic for t in blocks["bob@example.com"]) == [f"b/{i}" for i in range(5)]


class TestUsers:
    """Tests for user reads."""

    @pytest.mark.asyncio
    async def test_get_user_access(self, sync):
        alice = await sync.sign_up("alice@example.com", "s3cret-pass")
        bob = await sync.sign_up("bob@example.com", "s3cret-pass")

        assert (await sync.get_user(alice.id, alice.id)).email == "alice@example.com"
        with pytest.raises(AccessDeniedError):
            await sync.get_user(alice.id, bob.id)
        assert (await sync.get_user(alice.id, bob.id, Role.SUPER_ADMIN)).id == alice.id


class TestBrokerToggle:
    """Tests for starting and stopping the broker."""

    @pytest.mark.asyncio
    async def test_toggle_on_and_off(self, sync):
        alice = await sync.sign_up("alice@example.com", "s3cret-pass")

        assert await sync.toggle_broker(alice.id, True) is True
        assert (await sync.directory.get_user_by_id(alice.id)).mosquitto_on is True

        assert await sync.toggle_broker(alice.id, False) is False
        assert (await sync.directory.get_user_by_id(alice.id)).mosquitto_on is False

    @pytest.mark.asyncio
    async def test_start_failure_keeps_desired_state(self, data_dir, sync):
        alice = await sync.sign_up("alice@example.com", "s3cret-pass")
        config = MosquittoConfig(config_dir=str(data_dir), exe_dir=str(data_dir / "missing"))
        sync.supervisor = BrokerSupervisor(config)

        with pytest.raises(SupervisorError):
            await sync.toggle_broker(alice.id, True)
        assert (await sync.directory.get_user_by_id(alice.id)).mosquitto_on is True

    @pytest.mark.asyncio
    async def test_unknown_user(self, sync):
        with pytest.raises(RecordNotFoundError):
            await sync.toggle_broker(999, True)
        assert not sync.supervisor.is_running

    @pytest.mark.asyncio
    async def test_shutdown_stops_held_broker(self, sync):
        alice = await sync.sign_up("alice@example.com", "s3cret-pass")
        await sync.toggle_broker(alice.id, True)

        await sync.shutdown()

        assert not sync.supervisor.is_running
