#!/usr/bin/env python3
"""CLI: Ask the running server a question and print the streamed answer."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import httpx

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from papergrid import config
from papergrid.chat.sse import SseEventParser


def _print_event(event: str, data: dict, show_reasoning: bool) -> None:
    if event == "token":
        print(data.get("text", ""), end="", flush=True)
    elif event == "reasoning" and show_reasoning:
        print(f"\033[2m{data.get('text', '')}\033[0m", end="", flush=True)
    elif event == "tool-call":
        print(f"\n[tool] {data.get('toolName')}({json.dumps(data.get('args'), ensure_ascii=False)})",
              file=sys.stderr)
    elif event == "tool-result":
        status = "error" if data.get("isError") else "ok"
        print(f"[tool] {data.get('toolName')} -> {status}", file=sys.stderr)
    elif event == "done":
        print()
        for i, c in enumerate(data.get("citations", []), 1):
            print(f"  [{i}] {c.get('title')} (/{c.get('slug')}) score={c.get('score', 0):.2f}")
    elif event == "error":
        print(f"\nError: {data.get('error')}", file=sys.stderr)


def main() -> None:
    parser = argparse.ArgumentParser(description="Ask the blog assistant a question")
    parser.add_argument("question")
    parser.add_argument("--url", default=f"http://localhost:{config.PORT}", help="Server base URL")
    parser.add_argument("--model", default=None, help="Chat model override")
    parser.add_argument("--include-protected", action="store_true")
    parser.add_argument("--approve", action="append", default=[], metavar="KEY",
                        help="Approved tool key (repeatable)")
    parser.add_argument("--reasoning", action="store_true", help="Print reasoning deltas")
    args = parser.parse_args()

    body = {
        "question": args.question,
        "includeProtected": args.include_protected,
        "approvedToolKeys": args.approve,
    }
    if args.model:
        body["model"] = args.model

    sse = SseEventParser()
    failed = False
    with httpx.Client(base_url=args.url, timeout=httpx.Timeout(10.0, read=None)) as client:
        with client.stream("POST", "/ai/chat/stream", json=body) as resp:
            if resp.status_code != 200:
                resp.read()
                print(f"Error: HTTP {resp.status_code}: {resp.text}", file=sys.stderr)
                sys.exit(1)
            for chunk in resp.iter_bytes():
                sse.feed(chunk)
                for evt in sse:
                    failed = failed or evt.event == "error"
                    _print_event(evt.event, evt.data, args.reasoning)
                    if evt.event == "tool-result" and evt.data.get("result", {}).get("error") == "approval_required":
                        key = evt.data["result"].get("approval", {}).get("key")
                        print(f"[tool] approval required, re-run with --approve {key}", file=sys.stderr)
    for evt in sse.flush():
        _print_event(evt.event, evt.data, args.reasoning)
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
