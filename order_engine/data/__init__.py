"""Data layer package.

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from order_engine.data.mongo import MongoManager`
  - `from order_engine.data.redis_client import create_redis`
"""

__all__: list[str] = []
