"""
mosquitto-sync Test Suite.

This package contains:
- unit/: Unit tests (temporary files, fake command runners)
- integration/: Integration tests (SQLite directory, ACL file, HTTP API)
"""
