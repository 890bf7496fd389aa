"""
Sync module for mosquitto-sync - business events over files and records.

This module handles:
- The SQLite directory of users and topics
- BrokerSync, which orders directory, ACL, credential and broker calls

Invariants:
    - Business logic never touches the ACL or password file directly
    - File-system writes precede the matching relational write
"""

from .directory import Directory, Role, TopicRecord, UserRecord
from .facade import BrokerSync

__all__ = ["BrokerSync", "Directory", "Role", "TopicRecord", "UserRecord"]
