from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Callable

from llm.client import FakeModelClient, OpenAIModelClient
from mcp_client.manager import ConnectionManager
from observability.logging import configure_logging, get_logger
from orchestrator.graph_orchestrator import GraphOrchestrator

from .config import AppConfig, load_config
from .errors import ConfigError, McpChatError
from .types import Turn


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mcp-chat", description="Chat with a model that can call MCP tool servers")
    p.add_argument("--config", default="configs/app.yaml", help="YAML config path")
    p.add_argument("--log-level", default=None, help="log level (default: $MCPCHAT_LOG_LEVEL or INFO)")

    sub = p.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="run one turn and print its events")
    chat.add_argument("--text", required=True, help="user message")
    chat.add_argument("--history", default=None, help="JSON file with prior turns ([{role, parts}])")
    chat.add_argument("--format", choices=["jsonl", "sse"], default="jsonl", help="event output format")
    chat.add_argument("--fake", action="store_true", help="use FakeModelClient (offline stub)")

    sub.add_parser("tools", help="list tools of every connected server")
    sub.add_parser("prompts", help="list prompts of every connected server")
    sub.add_parser("resources", help="list resources of every connected server")
    sub.add_parser("status", help="connect configured servers and print their status")

    rr = sub.add_parser("read-resource", help="read one resource")
    rr.add_argument("--server", required=True, help="server id")
    rr.add_argument("--uri", required=True, help="resource URI")

    gp = sub.add_parser("get-prompt", help="fetch one prompt")
    gp.add_argument("--server", required=True, help="server id")
    gp.add_argument("--name", required=True, help="prompt name")
    gp.add_argument("--arg", action="append", default=[], metavar="KEY=VALUE", help="prompt argument (repeatable)")
    return p


def _parse_prompt_args(pairs: list[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigError(f"expected KEY=VALUE, got {pair!r}", path="--arg")
        out[key] = value
    return out


def _load_history(path: str | None) -> list[Turn]:
    if not path:
        return []
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read history: {e}", path=path) from e
    if not isinstance(raw, list):
        raise ConfigError("history must be a JSON list of turns", path=path)
    try:
        return [Turn.from_dict(t) for t in raw]
    except (ValueError, KeyError, AttributeError) as e:
        raise ConfigError(f"invalid turn: {e}", path=path) from e


def _print_json(obj: Any) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False, indent=2) + "\n")
    sys.stdout.flush()


async def _with_manager(cfg: AppConfig, fn: Callable[[ConnectionManager], Awaitable[int]]) -> int:
    manager = ConnectionManager(
        connect_timeout_s=cfg.mcp.connect_timeout_s,
        request_timeout_s=cfg.mcp.request_timeout_s,
        close_timeout_s=cfg.mcp.close_timeout_s,
    )
    try:
        await manager.connect_all(cfg.mcp.servers.values())
        return await fn(manager)
    finally:
        await manager.disconnect_all()


async def _chat(cfg: AppConfig, args: argparse.Namespace, manager: ConnectionManager) -> int:
    history = _load_history(args.history)
    model = FakeModelClient() if args.fake else OpenAIModelClient(cfg.model)
    orch = GraphOrchestrator(model=model, manager=manager, tools_cfg=cfg.tools)

    failed = False
    async for ev in orch.stream_turn(args.text, history):
        sys.stdout.write(ev.to_sse() if args.format == "sse" else ev.to_json_line())
        sys.stdout.flush()
        failed = failed or ev.type.value == "error"
    return 1 if failed else 0


async def _listing(manager: ConnectionManager, what: str) -> int:
    out: dict[str, Any] = {}
    for server_id in manager.get_connected_ids():
        try:
            if what == "tools":
                items = await manager.list_tools(server_id)
            elif what == "prompts":
                items = await manager.list_prompts(server_id)
            else:
                items = await manager.list_resources(server_id)
        except McpChatError as e:
            out[server_id] = {"error": e.message, "type": e.error_type}
            continue
        out[server_id] = [asdict(i) for i in items]
    _print_json(out)
    return 0


async def _status(manager: ConnectionManager) -> int:
    _print_json([s.to_dict() for s in manager.get_all_statuses()])
    return 0


async def _read_resource(manager: ConnectionManager, args: argparse.Namespace) -> int:
    contents = await manager.read_resource(args.server, args.uri)
    _print_json([asdict(c) for c in contents])
    return 0


async def _get_prompt(manager: ConnectionManager, args: argparse.Namespace) -> int:
    result = await manager.get_prompt(args.server, args.name, _parse_prompt_args(args.arg))
    _print_json(asdict(result))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(level=args.log_level, force=args.log_level is not None)
    log = get_logger("mcpchat.cli")

    # Offline stub: allow running without a real key.
    if getattr(args, "fake", False) and not os.getenv("GEMINI_API_KEY"):
        os.environ["GEMINI_API_KEY"] = "k_fake"

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        log.error("config_invalid", error=str(e))
        return 2

    handlers: dict[str, Callable[[ConnectionManager], Awaitable[int]]] = {
        "chat": lambda m: _chat(cfg, args, m),
        "tools": lambda m: _listing(m, "tools"),
        "prompts": lambda m: _listing(m, "prompts"),
        "resources": lambda m: _listing(m, "resources"),
        "status": _status,
        "read-resource": lambda m: _read_resource(m, args),
        "get-prompt": lambda m: _get_prompt(m, args),
    }

    try:
        return asyncio.run(_with_manager(cfg, handlers[args.command]))
    except ConfigError as e:
        log.error("config_invalid", error=str(e))
        return 2
    except McpChatError as e:
        log.error("command_failed", command=args.command, error_type=e.error_type, error=e.message)
        return 1
    except KeyboardInterrupt:
        return 130
