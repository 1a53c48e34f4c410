"""Prompt assembly: system preamble, project rules and conversation history."""

import json
from dataclasses import dataclass, field
from pathlib import Path

import tiktoken
from mcp import types

from . import fmt
from .mcp_client import namespaced_name

MAX_RULES_CHARS = 10_000
RULES_FILES = ("SNIPCODE.md", "AGENTS.md")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that helps developers read, write and "
    "change code in their project. Answer directly when you can; when you "
    "need to look at or change files, call one of your tools and wait for "
    "its result before continuing."
)

TOOL_CALL_INSTRUCTIONS = (
    "To use a tool, respond with:\n"
    'tool_call(tool_name="<tool_name>", args={...})\n'
    "Call one tool per response. The result will be sent back to you."
)

_encoder = tiktoken.get_encoding("cl100k_base")


def estimate_tokens(text: str) -> int:
    return len(_encoder.encode(text))


@dataclass
class ConversationMessage:
    role: str  # "system", "user" or "assistant"
    content: str


@dataclass
class Conversation:
    """Ordered message history of one chat."""

    messages: list[ConversationMessage] = field(default_factory=list)

    def add(self, role: str, content: str) -> None:
        self.messages.append(ConversationMessage(role, content))

    def clear(self) -> None:
        self.messages.clear()

    def __len__(self) -> int:
        return len(self.messages)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _read_capped(path: Path) -> str | None:
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            content = f.read(MAX_RULES_CHARS + 1)
    except OSError:
        return None
    if len(content) > MAX_RULES_CHARS:
        content = (
            content[:MAX_RULES_CHARS]
            + f"\n[truncated: {path.name} exceeds {MAX_RULES_CHARS} character limit]"
        )
    return content


def load_rules(
    base_dir: str, extra: list[str] | None = None, verbose: bool = False
) -> list[tuple[str, str]]:
    """Load rule files as (source, text) pairs.

    Explicit *extra* paths come first, then SNIPCODE.md and AGENTS.md from
    *base_dir*. Missing or unreadable files are skipped.
    """
    base = Path(base_dir).resolve()
    candidates = [Path(p).expanduser() for p in extra or []]
    candidates += [base / name for name in RULES_FILES]

    rules: list[tuple[str, str]] = []
    seen: set[Path] = set()
    for path in candidates:
        if not path.is_absolute():
            path = base / path
        path = path.resolve()
        if path in seen or not path.is_file():
            continue
        seen.add(path)
        content = _read_capped(path)
        if content is None:
            continue
        if verbose:
            fmt.info(f"Loaded rules from {path}")
        try:
            source = path.relative_to(base).as_posix()
        except ValueError:
            source = str(path)
        rules.append((source, content))
    return rules


def format_rules_for_prompt(rules: list[tuple[str, str]]) -> str:
    return "\n\n".join(
        f'<rules source="{source}">\n{text}\n</rules>' for source, text in rules
    )


# ---------------------------------------------------------------------------
# Preamble
# ---------------------------------------------------------------------------


def _tool_line(name: str, tool: types.Tool) -> str:
    props = (tool.inputSchema or {}).get("properties", {})
    return f"- {name}: {tool.description or ''} Args: {json.dumps(props)}"


def build_preamble(
    native_tools: list[types.Tool],
    mcp_tools: dict[str, list[types.Tool]] | None = None,
    rules_text: str = "",
    system_prompt: str | None = None,
) -> str:
    """Build the system preamble describing every tool the model may call.

    A remote tool whose name is already taken by a native tool or an
    earlier server is listed under its ``mcp__<server>__<tool>`` name.
    """
    parts = [system_prompt or DEFAULT_SYSTEM_PROMPT, ""]
    parts.append("You have access to the following native tools:")
    parts.extend(_tool_line(tool.name, tool) for tool in native_tools)

    taken = {tool.name for tool in native_tools}
    for server, tools in (mcp_tools or {}).items():
        if not tools:
            continue
        parts.append("")
        parts.append(f'Tools from MCP server "{server}":')
        for tool in tools:
            name = tool.name
            if name in taken:
                name = namespaced_name(server, tool.name)
            else:
                taken.add(name)
            parts.append(_tool_line(name, tool))

    if rules_text:
        parts.append("")
        parts.append(rules_text)

    parts.append("")
    parts.append(TOOL_CALL_INSTRUCTIONS)
    return "\n".join(parts)


def build_prompt(messages: list[ConversationMessage], preamble: str) -> str:
    """Render the preamble and the history as one completion prompt."""
    out = [preamble, "\n\n"]
    for message in messages:
        if message.role == "user":
            out.append(f"User: {message.content}\n\n")
        elif message.role == "assistant":
            out.append(f"Assistant: {message.content}\n\n")
        else:
            out.append(f"{message.content}\n\n")
    out.append("Assistant: ")
    return "".join(out)
