"""Durable order job queue (Redis)."""

from .queue import Job, JobQueue, RetryPolicy  # noqa: F401
