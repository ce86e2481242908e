import argparse
import json
import sys
from typing import Any, Dict, Iterator, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _headers(args: argparse.Namespace) -> Dict[str, str]:
    return {"X-User-Id": args.user} if getattr(args, "user", None) else {}


def iter_sse_events(lines: Iterator[str]) -> Iterator[Dict[str, Any]]:
    for line in lines:
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload:
            continue
        try:
            yield json.loads(payload)
        except json.JSONDecodeError:
            continue


def render_event(event: Dict[str, Any], out=None) -> None:
    out = out or sys.stdout
    if event.get("titleGenerated"):
        out.write(f"\n[title] {event.get('title')}\n")
        return
    if event.get("error"):
        out.write(f"\n[error] {event.get('content') or event.get('error')}\n")
        return
    if event.get("deepResearchStream"):
        info = event.get("stepInfo") or {}
        if event.get("stepType") == "plan":
            out.write("[plan]\n")
            for idx, question in enumerate(info.get("subQuestions") or [], start=1):
                out.write(f"  {idx}. {question}\n")
            return
        status = info.get("status") or ("completed" if info.get("isComplete") else "")
        out.write(f"[{event.get('stepType')}] {info.get('title')} ({status})\n")
        if event.get("stepType") == "final":
            out.write(f"\n{event.get('content', '')}\n")
        return
    if event.get("done"):
        out.write("\n[stopped]\n" if event.get("aborted") else "\n")
        return
    out.write(event.get("content") or "")
    out.flush()


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload: Dict[str, Any] = {"text": args.text, "is_deep_research_active": args.deep}
    if args.model:
        payload["model_ref"] = args.model
    url = _join_url(base, f"/api/chat/{args.session}")
    with httpx.Client(timeout=httpx.Timeout(args.timeout, connect=10.0)) as client:
        with client.stream("POST", url, json=payload, headers=_headers(args)) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Failed to send message: HTTP {resp.status_code} {resp.text}")
                return 1
            failed = False
            for event in iter_sse_events(resp.iter_lines()):
                if event.get("error"):
                    failed = True
                render_event(event)
    return 1 if failed else 0


def run_sessions_list(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/sessions"), headers=_headers(args), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list sessions: HTTP {resp.status_code}")
            return 1
        sessions = resp.json().get("sessions") or []
    if not sessions:
        print("No sessions.")
    for session in sessions:
        print(f"{session['id']}  {session.get('updated_at', '')}  {session.get('title', '')}")
    return 0


def run_sessions_create(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(
            _join_url(base, "/api/sessions"),
            json={"title": args.title},
            headers=_headers(args),
            timeout=10,
        )
        if resp.status_code >= 400:
            print(f"Failed to create session: HTTP {resp.status_code}")
            return 1
        print(resp.json()["id"])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chatflow CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    parser.add_argument("--user", default=None, help="User id sent as X-User-Id")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a message and stream the reply")
    chat.add_argument("session", help="Session id")
    chat.add_argument("text", help="Message text")
    chat.add_argument("--deep", action="store_true", help="Run deep research")
    chat.add_argument("--model", default=None, help="Model key, or agent:<key>")
    chat.add_argument("--timeout", type=float, default=600.0, help="Read timeout seconds")

    sessions = subparsers.add_parser("sessions", help="Session management")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd")
    sessions_sub.add_parser("list", help="List sessions")
    create = sessions_sub.add_parser("create", help="Create a session and print its id")
    create.add_argument("--title", default=None, help="Session title")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "sessions" and args.sessions_cmd == "list":
        return run_sessions_list(args)
    if args.command == "sessions" and args.sessions_cmd == "create":
        return run_sessions_create(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
