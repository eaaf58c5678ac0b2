"""Durable priority job queue with leased execution.

The store is the single source of truth for queue state: workers share
nothing but the database, and the only strict synchronization point is the
conditional UPDATE that claims a job.
"""
