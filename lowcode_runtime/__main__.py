"""Serve the runtime with uvicorn: ``python -m lowcode_runtime`` or ``lowcode-runtime``."""

from __future__ import annotations

import argparse
import os

import uvicorn


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lowcode-runtime", description="Start the custom API runtime server."
    )
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"), help="Bind address")
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("PORT", "8000")), help="Bind port"
    )
    parser.add_argument("--workers", type=int, default=1, help="Number of worker processes")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    parser.add_argument("--log-level", default="info")
    return parser


def run(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    uvicorn.run(
        "lowcode_runtime.app:app",
        host=args.host,
        port=args.port,
        workers=args.workers,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    run()
