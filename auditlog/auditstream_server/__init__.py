"""
AuditStream Server - delivery engine for audit log streams.

This package forwards each project's audit events to the HTTP endpoints
("stream destinations") configured for that project:
- StreamRegistry holds destinations (url, optional bearer token, enabled flag)
- EventBuffer holds a bounded, ordered queue of events per project
- DeliveryWorker performs HTTP POST attempts with retry and circuit breaking
- DeliveryScheduler fans events out across a bounded, fair worker pool
- DeadLetterSink records events that exhausted their retries

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │  Producers  │────▶│ HTTP ingest │────▶│   EventBuffer   │
    │ (HTTP/Kafka)│     │ / Kafka src │     │  (per project)  │
    └─────────────┘     └─────────────┘     └────────┬────────┘
                                                     │
                                                     ▼
                        ┌─────────────────────────────────────────┐
                        │            DeliveryScheduler            │
                        └─────────────────────────────────────────┘
                                             │
                        ┌────────────────────┼────────────────────┐
                        ▼                    ▼                    ▼
                   ┌─────────┐         ┌─────────┐         ┌─────────┐
                   │ Worker  │         │ Worker  │         │ Worker  │
                   └────┬────┘         └────┬────┘         └────┬────┘
                        │                   │                   │
                        ▼                   ▼                   ▼
                  destination URL     destination URL     DeadLetterSink

Invariants:
    - Every enqueued event is delivered, dead-lettered, abandoned by a
      configuration change, or explicitly reported as dropped
    - Bearer tokens are never logged or returned by the API
    - A failing destination never delays other destinations or projects

How to change safely:
    - Keep delivery outcomes as values; exceptions are for configuration errors
    - Test new failure classifications against the state machine in scheduler/
"""

from ._version import __version__

__all__ = ["__version__"]
