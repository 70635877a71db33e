"""Conversion of caller-supplied JSON into ACP content blocks and MCP server definitions."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Iterable

from acp.helpers import ContentBlock, text_block
from acp.schema import EnvVariable, HttpHeader, HttpMcpServer, SseMcpServer, StdioMcpServer
from pydantic import TypeAdapter, ValidationError

from agentrelay.errors import InvalidRequest

_CONTENT_BLOCK = TypeAdapter(ContentBlock)


def parse_content_blocks(content: str | Iterable[Any]) -> list[Any]:
    """Validate prompt content against the ACP content block union.

    A bare string becomes a single text block. Already-parsed blocks pass
    through untouched.
    """

    if isinstance(content, str):
        return [text_block(content)]
    blocks: list[Any] = []
    for index, item in enumerate(content):
        if hasattr(item, "model_dump"):
            blocks.append(item)
            continue
        try:
            blocks.append(_CONTENT_BLOCK.validate_python(item))
        except ValidationError as exc:
            raise InvalidRequest(f"content[{index}] is not a valid content block: {exc.errors()[0]['msg']}") from exc
    if not blocks:
        raise InvalidRequest("prompt content is empty")
    return blocks


def _pairs(entries: Any, cls: type) -> list[Any]:
    """Accept ACP's `[{name, value}]` list form or a plain `{name: value}` mapping."""
    if isinstance(entries, dict):
        return [cls(name=str(name), value=str(value)) for name, value in entries.items()]
    return [
        cls(name=entry["name"], value=entry["value"])
        for entry in entries or []
        if isinstance(entry, dict) and "name" in entry and "value" in entry
    ]


def _build_mcp_server(entry: dict[str, Any]) -> Any:
    stype = entry.get("type") or "stdio"
    name = entry.get("name") or ""
    if stype == "stdio":
        command = entry.get("command")
        if not command:
            raise InvalidRequest(f"stdio mcp server {name!r} needs a command")
        return StdioMcpServer(
            name=name,
            command=command,
            args=[str(arg) for arg in entry.get("args", [])],
            env=_pairs(entry.get("env"), EnvVariable),
        )
    if stype in {"http", "sse"}:
        url = entry.get("url")
        if not url:
            raise InvalidRequest(f"{stype} mcp server {name!r} needs a url")
        headers = _pairs(entry.get("headers"), HttpHeader)
        if stype == "http":
            return HttpMcpServer(type="http", name=name, url=url, headers=headers)
        return SseMcpServer(type="sse", name=name, url=url, headers=headers)
    raise InvalidRequest(f"unknown mcp server type: {stype}")


def parse_mcp_server(entry: Any) -> Any:
    if hasattr(entry, "model_dump"):
        return entry
    if not isinstance(entry, dict):
        raise InvalidRequest("mcp server entries must be objects")
    try:
        return _build_mcp_server(entry)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        prefix = f"{location}: " if location else ""
        raise InvalidRequest(f"mcp server {entry.get('name')!r} is invalid: {prefix}{first['msg']}") from exc


def parse_mcp_servers(entries: Iterable[Any] | None) -> list[Any]:
    return [parse_mcp_server(entry) for entry in entries or []]


def load_mcp_config(path: str) -> list[Any]:
    """Load MCP server definitions from a JSON file; problems are reported and yield `[]`."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"[failed to read mcp-config: {exc}]", file=sys.stderr)
        return []

    if isinstance(data, dict):
        data = data.get("mcpServers", [])
    if not isinstance(data, list):
        print("[mcp-config must be a JSON array]", file=sys.stderr)
        return []

    servers: list[Any] = []
    for entry in data:
        try:
            servers.append(parse_mcp_server(entry))
        except InvalidRequest as exc:
            print(f"[skipping mcp server: {exc.message}]", file=sys.stderr)
    return servers
