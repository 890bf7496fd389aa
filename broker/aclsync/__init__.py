"""
mosquitto-sync - ACL and credential provisioning for a Mosquitto broker.

This package keeps the broker's flat-file ACL and password file in step
with a relational record of users and topics, and starts/stops the broker
process itself:

    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Client    │────▶│  HTTP API   │────▶│   BrokerSync    │
    │             │     │  (FastAPI)  │     │    (facade)     │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                  ┌──────────────────┬───────────────┼──────────────────┐
                  │                  │               │                  │
                  ▼                  ▼               ▼                  ▼
            ┌───────────┐     ┌────────────┐   ┌───────────┐     ┌────────────┐
            │ Directory │     │  AclStore  │   │Credential │     │ Supervisor │
            │ (SQLite)  │     │            │   │  Store    │     │            │
            └───────────┘     └─────┬──────┘   └─────┬─────┘     └─────┬──────┘
                                    │                │                 │
                                    ▼                ▼                 ▼
                             mosquitto.acl    mosquitto_passwd     mosquitto

Invariants:
    - The ACL file is only written through AclStore (locked, atomic replace)
    - The password file is only written through mosquitto_passwd
    - File-system writes are idempotent and happen before the relational write
    - No secret is ever logged

How to change safely:
    - Keep the ACL line format bit-exact; the broker parses it
    - Test new ACL mutations against multi-user fixtures
    - Never add a read of the ACL file that bypasses the store lock
"""

from ._version import __version__

__all__ = ["__version__"]
