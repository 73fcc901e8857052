"""
CLI tools for AuditStream operators.

This module provides command-line tools for:
- deadletters: List, replay and purge dead-letter entries over the HTTP API

Invariants:
    - Tools talk to a running server; they never open its databases
"""

from .deadletter_cli import DeadLetterCLI

__all__ = ["DeadLetterCLI"]
