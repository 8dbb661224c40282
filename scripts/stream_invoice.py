#!/usr/bin/env python
from __future__ import annotations

import argparse
import base64
import json
import mimetypes
import sys
import threading
from pathlib import Path

import httpx


def encode_image(path: Path) -> str:
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime_type};base64,{data}"


def post_decision(base_url: str, intervention_id: str, decision: str) -> None:
    response = httpx.post(
        f"{base_url}/api/workflow/intervention",
        json={"interventionId": intervention_id, "decision": decision},
        timeout=30,
    )
    print(f"[decision] {response.status_code} {response.text}", file=sys.stderr)


def ask_decision(event: dict) -> str:
    print(f"\n{event.get('agent')}: {event.get('message')}", file=sys.stderr)
    for issue in event.get("violations") or event.get("errors") or []:
        print(f"  - {issue}", file=sys.stderr)
    answer = ""
    while answer not in {"accept", "decline"}:
        answer = input("accept / decline? ").strip().lower()
    return answer


def main() -> None:
    parser = argparse.ArgumentParser(description="Stream an invoice image through the agent workflow")
    parser.add_argument("image", help="Invoice image file (png, jpg, webp)")
    parser.add_argument("--url", default="http://localhost:8000", help="API base URL")
    parser.add_argument("--decision", choices=["accept", "decline"], help="Answer every intervention automatically")
    parser.add_argument("--raw", action="store_true", help="Print raw JSON frames instead of a summary")
    args = parser.parse_args()

    base_url = args.url.rstrip("/")
    body = {"image": encode_image(Path(args.image))}

    with httpx.stream("POST", f"{base_url}/api/workflow/stream", json=body, timeout=None) as response:
        if response.status_code != 200:
            response.read()
            parser.exit(1, f"request failed: {response.status_code} {response.text}\n")
        print(f"workflow {response.headers.get('X-Workflow-Id')}", file=sys.stderr)

        for line in response.iter_lines():
            if not line.startswith("data: "):
                continue
            event = json.loads(line[len("data: "):])
            kind = event.get("type")

            if args.raw:
                print(json.dumps(event, ensure_ascii=False))
            elif kind == "reasoning":
                print(event.get("content", ""), end="", flush=True)
            elif kind == "agent_start":
                print(f"\n== [{event.get('step')}] {event.get('agent')} ==")
            elif kind in {"agent_action", "workflow_start", "intervention_pending"}:
                print(f"\n> {event.get('message')}")
            elif kind in {"workflow_stopped", "error"}:
                print(f"\n!! {kind}: {event.get('reason') or event.get('message')}")
            elif kind == "workflow_complete":
                print("\n" + json.dumps(event.get("payload"), indent=2, ensure_ascii=False))

            if kind == "human_intervention_required":
                decision = args.decision or ask_decision(event)
                threading.Thread(
                    target=post_decision,
                    args=(base_url, event["interventionId"], decision),
                    daemon=True,
                ).start()
            if kind == "done":
                break


if __name__ == "__main__":
    main()
