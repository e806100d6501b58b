"""Convenience launcher for the order engine API.

Dev:
  python -m order_engine.ui.serve --reload

Prod:
  python -m order_engine.ui.serve --host 0.0.0.0 --port $PORT
"""

from __future__ import annotations

import argparse
import os

import uvicorn


def main() -> None:
    p = argparse.ArgumentParser(description="Serve order engine API (FastAPI)")
    p.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")))
    p.add_argument("--reload", action="store_true")
    p.add_argument("--env-file", default=os.getenv("ENV_FILE", ".env"))
    args = p.parse_args()

    env_file = str(args.env_file) if args.env_file and os.path.exists(args.env_file) else None
    uvicorn.run(
        "order_engine.ui.api:build_default_app",
        factory=True,
        host=str(args.host),
        port=int(args.port),
        reload=bool(args.reload),
        env_file=env_file,
        ws="wsproto",  # stable across environments
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
