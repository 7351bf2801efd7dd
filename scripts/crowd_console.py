from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import httpx

from mcp.client.session import ClientSession
from mcp.client.streamable_http import streamable_http_client


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="crowd_console",
        description="Operator console for a running crowdplay server (MCP Streamable HTTP transport).",
    )
    p.add_argument(
        "--url",
        default="http://127.0.0.1:8000/mcp",
        help="MCP endpoint URL. A bare base like http://127.0.0.1:8000 assumes /mcp.",
    )
    p.add_argument("--format", choices=["text", "json"], default="text")

    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show window state and live tally")
    sub.add_parser("last", help="Show the last executed move")
    sub.add_parser("stats", help="Show aggregate move stats")
    sub.add_parser("advance", help="Force-close the collecting window")
    sub.add_parser("commands", help="List votable commands")
    sub.add_parser("boosts", help="List active boosts")

    history = sub.add_parser("history", help="Show recent moves")
    history.add_argument("--limit", type=int, default=10)

    vote = sub.add_parser("vote", help="Submit a chat line on behalf of a user")
    vote.add_argument("user")
    vote.add_argument("text")
    vote.add_argument("--base-weight", type=float, default=None)

    boost = sub.add_parser("boost", help="Grant a temporary vote weight")
    boost.add_argument("user")
    boost.add_argument("--weight", type=float, default=None)
    boost.add_argument("--duration-ms", type=int, default=None)

    watch = sub.add_parser("watch", help="Poll status until interrupted")
    watch.add_argument("--interval", type=float, default=1.0)

    return p


def _normalize_url(url: str) -> str:
    p = urlparse(url)
    if p.path in ("", "/"):
        return url.rstrip("/") + "/mcp"
    return url


def _tool_call(args: argparse.Namespace) -> tuple[str, dict[str, Any]]:
    c = args.command
    if c == "status" or c == "watch":
        return "vote_get_status", {}
    if c == "last":
        return "vote_get_last_move", {}
    if c == "stats":
        return "vote_get_stats", {}
    if c == "advance":
        return "vote_force_advance", {}
    if c == "commands":
        return "controls_list_commands", {}
    if c == "boosts":
        return "boost_list", {}
    if c == "history":
        return "vote_get_history", {"limit": args.limit}
    if c == "vote":
        a: dict[str, Any] = {"user": args.user, "text": args.text}
        if args.base_weight is not None:
            a["base_weight"] = args.base_weight
        return "vote_submit", a
    if c == "boost":
        a = {"user": args.user}
        if args.weight is not None:
            a["weight"] = args.weight
        if args.duration_ms is not None:
            a["duration_ms"] = args.duration_ms
        return "boost_grant", a
    raise ValueError(f"unknown command: {c}")


def _envelope(result: Any) -> dict[str, Any]:
    """Pull the {ok, data, error, trace_id} envelope out of a CallToolResult."""

    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        return structured

    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        if text:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return {"ok": False, "data": None, "error": {"code": "BAD_RESPONSE", "message": text}}
    return {"ok": False, "data": None, "error": {"code": "BAD_RESPONSE", "message": "empty tool result"}}


def _print_status(data: dict[str, Any]) -> None:
    window = data.get("window") or {}
    remaining = window.get("time_remaining_ms")
    print(
        f"window #{window.get('window_id')} {window.get('state')}"
        + (f" ({remaining} ms left)" if remaining is not None else " (not armed)")
    )
    votes = window.get("votes") or {}
    first = window.get("first_voters") or {}
    for key, weight in sorted(votes.items(), key=lambda kv: -kv[1]):
        print(f"  {key:<8} {weight:>6g}  first: {first.get(key)}")
    last = data.get("last_move")
    if last:
        print(f"last move: {last['command']['label']} ({last['votes']:g}/{last['total_votes']:g}) by {last['first_voter']}")


def _print(command: str, env: dict[str, Any], *, fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(env, ensure_ascii=False, indent=2, sort_keys=True))
        return
    if not env.get("ok"):
        err = env.get("error") or {}
        print(f"ERROR {err.get('code')}: {err.get('message')}")
        return
    data = env.get("data")
    if command in ("status", "watch") and isinstance(data, dict):
        _print_status(data)
        return
    print(json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True))


async def _run(url: str, args: argparse.Namespace) -> int:
    name, arguments = _tool_call(args)

    async with streamable_http_client(url) as (read_stream, write_stream, _get_session_id):
        async with ClientSession(read_stream, write_stream) as session:
            await session.initialize()

            if args.command != "watch":
                env = _envelope(await session.call_tool(name, arguments))
                _print(args.command, env, fmt=args.format)
                return 0 if env.get("ok") else 1

            while True:
                env = _envelope(await session.call_tool(name, arguments))
                _print(args.command, env, fmt=args.format)
                await asyncio.sleep(max(0.1, args.interval))


def _walk_exceptions(exc: BaseException) -> list[BaseException]:
    if isinstance(exc, BaseExceptionGroup):
        out: list[BaseException] = []
        for sub in exc.exceptions:
            out.extend(_walk_exceptions(sub))
        return out
    return [exc]


def _report_http_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        print(f"ERROR: HTTP {exc.response.status_code} when calling {exc.request.method} {exc.request.url}")
        print("Hint: start crowdplay with --transport http and check --http-path.")
        return True
    if isinstance(exc, httpx.HTTPError):
        print("ERROR: HTTP client error:", str(exc))
        return True
    return False


async def _main_async(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    url = _normalize_url(args.url)

    try:
        return await _run(url, args)
    except BaseExceptionGroup as eg:
        flat = _walk_exceptions(eg)
        for e in flat:
            if _report_http_error(e):
                return 2
        print("ERROR:", str(flat[0] if flat else eg))
        return 2
    except httpx.HTTPError as e:
        _report_http_error(e)
        return 2


def main(argv: list[str] | None = None) -> int:
    try:
        return asyncio.run(_main_async(argv))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
