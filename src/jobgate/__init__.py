"""Workload admission and scheduling engine.

Background work is admitted by a rate limiter, queued in a durable SQLite
job store with leased execution, dispatched by per-queue worker pools and
throttled by a monthly cost budget gate.
"""

__version__ = "0.1.0"
