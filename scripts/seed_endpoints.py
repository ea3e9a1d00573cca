#!/usr/bin/env python3
"""Load endpoint definitions from a JSON file into the configured store.

Usage:
    python scripts/seed_endpoints.py endpoints.json
    python scripts/seed_endpoints.py endpoints.json --dry-run

The file holds either a list of definitions or an object with an
``endpoints`` list. Each entry uses the same camelCase shape accepted by
``POST /v1/admin/endpoints``; entries with an ``id`` replace the stored
definition of that id.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
    SHARED_FS_ROOT: State directory for the memory store
"""
from __future__ import annotations

import argparse
import json
import os
import sys
import uuid
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def load_entries(path: Path) -> list[dict]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("endpoints", [])
    if not isinstance(data, list):
        raise ValueError("expected a list of endpoint definitions")
    return data


def seed(entries: list[dict], dry_run: bool = False) -> list[dict]:
    """Validate and upsert every entry; returns one summary row per entry."""
    # Import here to avoid loading config before env vars are set
    from pydantic import ValidationError

    from lowcode_runtime.api.schemas import EndpointDefinitionRequest
    from lowcode_runtime.config import get_settings
    from lowcode_runtime.storage.memory import MemoryDefinitionStore
    from lowcode_runtime.storage.models import EndpointDefinition
    from lowcode_runtime.storage.postgres import PostgresDefinitionStore

    settings = get_settings()
    store = (
        MemoryDefinitionStore(fs_root=settings.shared_fs_root)
        if settings.use_memory_store
        else PostgresDefinitionStore(settings.database_url)
    )

    results = []
    for index, entry in enumerate(entries):
        try:
            request = EndpointDefinitionRequest.model_validate(entry)
        except ValidationError as exc:
            print(f"Entry {index}: invalid definition")
            for error in exc.errors():
                loc = ".".join(str(part) for part in error["loc"])
                print(f"  {loc}: {error['msg']}")
            results.append({"index": index, "status": "invalid"})
            continue

        payload = request.to_payload()
        payload["id"] = request.id or str(uuid.uuid4())
        existing = store.get(payload["id"])
        label = f"{payload['method']} {payload['path']} ({payload['id']})"
        if dry_run:
            print(f"[DRY RUN] Would {'replace' if existing else 'create'} {label}")
            results.append({"index": index, "id": payload["id"], "status": "dry_run"})
            continue
        if existing is not None:
            payload["createdAt"] = existing.created_at.isoformat()
        store.upsert(EndpointDefinition.from_dict(payload))
        status = "replaced" if existing else "created"
        print(f"{status.capitalize()} {label}")
        results.append({"index": index, "id": payload["id"], "status": status})
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Seed custom API endpoint definitions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("file", type=Path, help="JSON file of endpoint definitions")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and report without writing",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/lowcode-seed")

    try:
        results = seed(load_entries(args.file), dry_run=args.dry_run)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    invalid = [r for r in results if r["status"] == "invalid"]
    print(f"\n{len(results) - len(invalid)} of {len(results)} definitions processed")
    if invalid:
        sys.exit(1)


if __name__ == "__main__":
    main()
