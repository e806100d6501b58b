"""Execution layer (the only place that talks to liquidity sources).

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from order_engine.execution.router import MockDexRouter`
  - `from order_engine.execution.processor import OrderProcessor`
"""

__all__: list[str] = []
