"""
ACL module for mosquitto-sync - the broker's permission files.

This module handles:
- The ACL line format and user-block scanning
- Locked, atomic mutations of the ACL file
- Password file updates through mosquitto_passwd

Invariants:
    - Only AclStore writes the ACL file, only CredentialStore the password file
    - Every ACL mutation holds the per-file lock for its full read-modify-write
    - Every ACL write is published by an atomic rename

How to change safely:
    - Keep rendered lines bit-exact with the broker's parser
    - Add new mutations through AclStore._mutate
"""

from .credentials import CredentialStore
from .format import Access, BlockScanner, ScanState, TopicPermission, UserBlock
from .store import AclStore, atomic_replace

__all__ = [
    "AclStore",
    "atomic_replace",
    "CredentialStore",
    "Access",
    "BlockScanner",
    "ScanState",
    "TopicPermission",
    "UserBlock",
]
