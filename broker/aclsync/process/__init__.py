"""
Process module for mosquitto-sync - external programs.

This module handles:
- Running utilities to completion under a timeout
- Launching and stopping the broker process

Invariants:
    - No command runs without a deadline
    - The supervisor targets its own process handle before anything else
"""

from .runner import CommandResult, CommandRunner
from .supervisor import BrokerSupervisor

__all__ = ["CommandResult", "CommandRunner", "BrokerSupervisor"]
