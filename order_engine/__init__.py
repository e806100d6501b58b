"""DEX order execution engine: job queue, worker pool and status broadcast."""

__version__ = "0.1.0"
