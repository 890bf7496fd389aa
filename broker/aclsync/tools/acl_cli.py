"""
ACL administration CLI for mosquitto-sync.

This tool works directly on the configured broker files, without the HTTP
service or the directory database:
- show: Print the user blocks of the ACL file
- register: Add a user block
- add-topic / update-topic / delete-topic: Mutate a user's topic lines
- passwd: Set a user's broker password
- start / stop: Launch or stop the broker

Usage:
    mosquitto-acl show
    mosquitto-acl register alice@example.com
    mosquitto-acl add-topic alice@example.com sensors/temp --read
    mosquitto-acl update-topic alice@example.com sensors/temp --read --write
    mosquitto-acl delete-topic alice@example.com sensors/temp
    mosquitto-acl passwd alice@example.com        (password read from stdin)
    mosquitto-acl stop

Invariants:
    - Writes go through the same AclStore/CredentialStore as the service
    - Failures print the error and exit 1
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from dataclasses import replace

from ..acl.credentials import CredentialStore
from ..acl.format import Access
from ..acl.store import AclStore
from ..config import CommandConfig, MosquittoConfig
from ..errors import BrokerSyncError
from ..process.runner import CommandRunner
from ..process.supervisor import BrokerSupervisor

logger = logging.getLogger(__name__)


class AclCLI:
    """Commands over the broker files.

    Example:
        >>> cli = AclCLI(MosquittoConfig(config_dir="/etc/mosquitto"))
        >>> cli.register("alice")
        >>> print(cli.show())
    """

    def __init__(self, config: MosquittoConfig, runner: CommandRunner | None = None) -> None:
        self.config = config
        self.runner = runner or CommandRunner(CommandConfig.from_env().timeout_seconds)
        self.store = AclStore(config.acl_path, config.acl_file_mode)

    def show(self, as_json: bool = False) -> str:
        """Render the ACL file's user blocks."""
        blocks = self.store.snapshot()
        if as_json:
            return json.dumps(
                [
                    {
                        "user": b.username,
                        "topics": [
                            {"topic": t.topic, "access": t.access.value or None}
                            for t in b.topics
                        ],
                    }
                    for b in blocks
                ],
                indent=2,
            )
        out = []
        for block in blocks:
            out.append(block.username)
            for t in block.topics:
                access = t.access.value if t.access is not Access.UNSPECIFIED else "-"
                out.append(f"  {access:<9} {t.topic}")
        return "\n".join(out)

    def register(self, username: str) -> bool:
        return self.store.register_user(username)

    def add_topic(self, username: str, topic: str, read: bool, write: bool) -> bool:
        return self.store.add_topic(username, topic, read, write)

    def update_topic(self, username: str, topic: str, read: bool, write: bool) -> None:
        self.store.update_topic(username, topic, read, write)

    def delete_topic(self, username: str, topic: str) -> int:
        return self.store.delete_topic(username, topic)

    def passwd(self, username: str, password: str) -> None:
        store = CredentialStore(self.config.password_path, self.runner, self.config.passwd_binary)
        store.set_password(username, password)

    def start(self) -> int | None:
        supervisor = BrokerSupervisor(self.config, self.runner)
        supervisor.start()
        return supervisor.pid

    def stop(self) -> None:
        # A fresh process never holds a handle; stopping is by name.
        supervisor = BrokerSupervisor(self.config, self.runner)
        supervisor.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mosquitto-acl",
        description="Manage the Mosquitto ACL and password files",
    )
    parser.add_argument("--dir", help="Mosquitto config directory (default: $MOSQUITTO_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser("show", help="Print user blocks")
    show_parser.add_argument("--json", action="store_true", help="Output JSON")

    register_parser = subparsers.add_parser("register", help="Add a user block")
    register_parser.add_argument("username")

    for name, help_text in (
        ("add-topic", "Grant a topic to a user"),
        ("update-topic", "Change a topic's access"),
    ):
        topic_parser = subparsers.add_parser(name, help=help_text)
        topic_parser.add_argument("username")
        topic_parser.add_argument("topic")
        topic_parser.add_argument("--read", action="store_true", help="Allow subscribe")
        topic_parser.add_argument("--write", action="store_true", help="Allow publish")

    delete_parser = subparsers.add_parser("delete-topic", help="Remove a topic from a user")
    delete_parser.add_argument("username")
    delete_parser.add_argument("topic")

    passwd_parser = subparsers.add_parser("passwd", help="Set a user's broker password")
    passwd_parser.add_argument("username")

    subparsers.add_parser("start", help="Launch the broker")
    subparsers.add_parser("stop", help="Stop the broker by name")

    return parser


def _read_password() -> str:
    if sys.stdin.isatty():
        return getpass.getpass("Password: ")
    return sys.stdin.readline().rstrip("\n")


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    config = MosquittoConfig.from_env()
    if args.dir:
        config = replace(config, config_dir=args.dir)
    cli = AclCLI(config)

    try:
        if args.command == "show":
            print(cli.show(as_json=args.json))
        elif args.command == "register":
            added = cli.register(args.username)
            print(f"registered {args.username}" if added else f"{args.username} already present")
        elif args.command == "add-topic":
            if not cli.add_topic(args.username, args.topic, args.read, args.write):
                print("no access requested, nothing written")
        elif args.command == "update-topic":
            cli.update_topic(args.username, args.topic, args.read, args.write)
        elif args.command == "delete-topic":
            removed = cli.delete_topic(args.username, args.topic)
            print(f"removed {removed} line(s)")
        elif args.command == "passwd":
            cli.passwd(args.username, _read_password())
            print(f"password set for {args.username}")
        elif args.command == "start":
            print(f"broker started with pid {cli.start()}")
        elif args.command == "stop":
            cli.stop()
            print("broker stopped")
    except (BrokerSyncError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
