#!/usr/bin/env python3
"""CLI: Build or update the post vector index from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from papergrid import config
from papergrid.errors import AiError
from papergrid.indexer.vector_index import VectorIndex
from papergrid.settings import get_ai_runtime_settings
from papergrid.storage.sqlite_store import SqliteStore
from papergrid.storage.vector_store import VectorStore


async def _run(index: VectorIndex, args: argparse.Namespace) -> dict:
    if args.command == "rebuild":
        return await index.rebuild_all_post_index()
    if args.command == "post":
        return await index.index_post_by_id(args.post_id, force=args.force)
    if args.command == "delete":
        return index.delete_post_vector_index(args.post_id)
    return {
        "readiness": index.get_readiness(),
        "stats": index.get_stats(),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage the post vector index")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("rebuild", help="Re-embed every published post and drop stale entries")

    post = sub.add_parser("post", help="Index one post (skipped when unchanged)")
    post.add_argument("post_id")
    post.add_argument("--force", action="store_true", help="Re-embed even if unchanged")

    delete = sub.add_parser("delete", help="Remove one post from the index")
    delete.add_argument("post_id")

    sub.add_parser("stats", help="Show index readiness and bookkeeping counts")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if not config.SQLITE_PATH.exists():
        print(f"Error: database {config.SQLITE_PATH} does not exist.", file=sys.stderr)
        print("Set DATA_DIR in .env to the directory holding papergrid.db.", file=sys.stderr)
        sys.exit(1)

    store = SqliteStore(config.SQLITE_PATH)
    store.init_db()
    settings = get_ai_runtime_settings(store)
    vectors = VectorStore(config.LANCEDB_PATH, dims=settings.embedding_dimensions)
    vectors.init_table()
    index = VectorIndex(store, vectors)

    t0 = time.perf_counter()
    try:
        result = asyncio.run(_run(index, args))
    except AiError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()

    print(json.dumps(result, indent=2, ensure_ascii=False))
    print(f"\nDone in {time.perf_counter() - t0:.1f}s", file=sys.stderr)


if __name__ == "__main__":
    main()
