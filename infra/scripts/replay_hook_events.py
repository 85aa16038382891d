import argparse
import asyncio
import json
import uuid
from pathlib import Path

import httpx
import websockets

TAIL_IDLE_SECONDS = 2.0

DEMO_TOOLS = [
    ("Read", {"file_path": "README.md"}, "42 lines"),
    ("Grep", {"pattern": "TODO"}, "3 matches"),
    ("Edit", {"file_path": "app.py"}, "1 replacement"),
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay agent hook events against the event hub.")
    parser.add_argument("--url", default="http://localhost:8000", help="Event hub base URL")
    parser.add_argument("--app", default="demo", help="Producer app name")
    parser.add_argument("--session-id", default=None, help="Session id (random when omitted)")
    parser.add_argument(
        "--file",
        default=None,
        help="JSON file with a list of {event_type, payload, summary} objects",
    )
    parser.add_argument(
        "--tail",
        action="store_true",
        help="Follow the session over /ws while replaying",
    )
    parser.add_argument(
        "--simulate-resume",
        action="store_true",
        help="Drop the tail connection at the midpoint and resume from the last seen sequence",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=0.2,
        help="Seconds between submissions",
    )
    return parser.parse_args()


def build_hook_event(
    app: str,
    session_id: str,
    event_type: str,
    payload: dict | None = None,
    summary: str | None = None,
) -> dict:
    """Request body in the shape the producer hook templates post."""
    body = {
        "app": app,
        "session_id": session_id,
        "event_type": event_type,
        "payload": payload if payload is not None else {},
    }
    if summary is not None:
        body["summary"] = summary
    return body


def demo_run(prompt: str = "Tidy up the README") -> list[dict]:
    steps = [
        {
            "event_type": "UserPromptSubmit",
            "payload": {"prompt": prompt},
            "summary": "User submitted prompt",
        }
    ]
    for tool, params, result in DEMO_TOOLS:
        steps.append(
            {
                "event_type": "PreToolUse",
                "payload": {"tool": tool, "params": params},
                "summary": f"Using {tool}",
            }
        )
        steps.append(
            {
                "event_type": "PostToolUse",
                "payload": {"tool": tool, "result": result},
                "summary": f"Completed {tool}",
            }
        )
    steps.append({"event_type": "Stop", "payload": {}, "summary": "Agent stopped"})
    return steps


def load_steps(path: Path) -> list[dict]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of events")
    return data


def ws_url_for(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):].rstrip("/") + "/ws"
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):].rstrip("/") + "/ws"
    return base_url.rstrip("/") + "/ws"


async def tail(ws_url: str, app: str, session_id: str, since: int, stop: asyncio.Event) -> int:
    """Print frames for one session; returns the last sequence seen."""
    last_seen = since
    async with websockets.connect(ws_url) as ws:
        await ws.send(
            json.dumps({"resume_from": [{"app": app, "session_id": session_id, "sequence": since}]})
        )
        while True:
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=TAIL_IDLE_SECONDS)
            except TimeoutError:
                if stop.is_set():
                    return last_seen
                continue
            message = json.loads(raw)
            kind = message.get("type")
            if kind == "event":
                event = message["event"]
                if (event["app"], event["session_id"]) != (app, session_id):
                    continue
                last_seen = event["sequence"]
                origin = "backfill" if message.get("backfill") else "live"
                status = (message.get("session_state") or {}).get("status")
                print(
                    f"[{origin}] seq={event['sequence']} {event['event_name']} "
                    f"status={status} summary={event.get('summary')!r}"
                )
            elif kind == "gap":
                print(f"Gap reported: dropped={message['dropped']} resume_from={message['resume_from']}")
            elif kind in {"connection", "live"}:
                print(f"Stream {kind}: {message}")


async def replay(
    base_url: str,
    app: str,
    session_id: str,
    steps: list[dict],
    follow: bool,
    simulate_resume: bool,
    delay: float,
) -> None:
    ws_url = ws_url_for(base_url)
    stop = asyncio.Event()
    tail_task: asyncio.Task | None = None
    if follow or simulate_resume:
        tail_task = asyncio.create_task(tail(ws_url, app, session_id, 0, stop))
        await asyncio.sleep(0.5)

    split_index = max(1, len(steps) // 2)
    async with httpx.AsyncClient(base_url=base_url, timeout=5.0) as client:
        for index, step in enumerate(steps, start=1):
            if simulate_resume and tail_task is not None and index == split_index + 1:
                stop.set()
                last_seen = await tail_task
                print(f"Simulating disconnect after seq={last_seen}...")
                stop = asyncio.Event()
                tail_task = asyncio.create_task(tail(ws_url, app, session_id, last_seen, stop))

            body = build_hook_event(
                app,
                session_id,
                step["event_type"],
                step.get("payload"),
                step.get("summary"),
            )
            response = await client.post("/events", json=body)
            if response.status_code == 200:
                print(f"Sent {step['event_type']} -> sequence={response.json()['sequence']}")
            else:
                print(f"Rejected {step['event_type']}: {response.status_code} {response.text}")
            if delay > 0:
                await asyncio.sleep(delay)

    if tail_task is not None:
        stop.set()
        await tail_task


def main() -> None:
    args = parse_args()
    session_id = args.session_id or f"session-{uuid.uuid4().hex[:8]}"
    if args.file:
        steps_file = Path(args.file)
        if not steps_file.exists():
            raise FileNotFoundError(f"Events file not found: {steps_file}")
        steps = load_steps(steps_file)
    else:
        steps = demo_run()
    asyncio.run(
        replay(
            args.url,
            args.app,
            session_id,
            steps,
            args.tail,
            args.simulate_resume,
            args.delay,
        )
    )


if __name__ == "__main__":
    main()
