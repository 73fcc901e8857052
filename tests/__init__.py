"""
AuditStream Test Suite.

This package contains:
- unit/: Unit tests (no network, SQLite in temporary directories)
- integration/: Scheduler and HTTP API tests against simulated destinations
- helpers.py: Scripted destinations and a wired in-memory engine
"""
