"""Pipeline wiring: subscriptions, worker pool, coordinator and runtime handle.

Import concrete modules directly, e.g.:
  - `from order_engine.orchestrator.runtime import open_runtime`
"""

__all__: list[str] = []
