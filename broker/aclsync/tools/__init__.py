"""
CLI tools for mosquitto-sync administration.

This module provides command-line tools for:
- acl: Inspect and mutate the ACL file, set passwords, start/stop the broker

Invariants:
    - Tools work offline (no running service required)
    - Tools write through the same locked stores as the service
"""

from .acl_cli import AclCLI

__all__ = ["AclCLI"]
