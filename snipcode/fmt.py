"""Diagnostics for the terminal, printed to stderr through a Rich console.

Stdout is reserved for the final answer, so everything here goes to stderr.
"""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Replace the shared console according to --color / --no-color."""
    global _console
    options: dict = {"stderr": True}
    if color:
        options.update(force_terminal=True, no_color=False)
    if no_color:
        options["no_color"] = True
    _console = Console(**options)


def _say(*segments, end: str = "\n") -> None:
    """Print (text, style) pairs as one line. Text is never parsed as markup."""
    line = Text()
    for text, style in segments:
        line.append(text, style=style)
    _console.print(line, end=end)


def _indented(body: str, style: str = "dim") -> None:
    for row in body.splitlines():
        _say((f"    {row}", style))


# rounds


def turn_header(n: int, max_n: int, token_est: int) -> None:
    _console.print(Rule(f"Round {n}/{max_n} (~{token_est} tokens)", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    _say((f"  LLM responded in {elapsed:.1f}s  finish_reason={finish_reason}", style))


def completion(rounds: int, exit_code: str) -> None:
    if exit_code == "ok":
        _say((f"  ✓ Turn finished: {rounds} rounds", "bold green"))
    else:
        _say((f"  Turn finished: {rounds} rounds, exit={exit_code}", "bold red"))


# tools


def tool_call(name: str, args_json: str) -> None:
    _say(("  ▶ ", "bold magenta"), (name, "bold magenta"))
    if args_json:
        _indented(args_json)


def tool_result(name: str, elapsed: float, preview: str) -> None:
    _say((f"  ✓ {name}  {elapsed:.1f}s", "green"))
    if preview:
        _indented(preview)


def tool_error(name: str, msg: str) -> None:
    _say((f"  ✗ {name}", "bold red"), (f"  {msg}", "red"))


# model output


def reasoning(text: str) -> None:
    label = "  [reasoning] "
    for i, row in enumerate(text.splitlines()):
        _say((label if i == 0 else " " * len(label), "yellow"), (row, "dim italic"))


def partial(text: str) -> None:
    """Redraw the streaming preview in place, keeping the last 100 characters."""
    tail = text.strip().replace("\n", " ")[-100:]
    _say((f"  … {tail}", "dim"), end="\r")


# MCP servers


def mcp_server_start(name: str, tool_count: int) -> None:
    _say((f"  ✓ MCP server {name}", "green"), (f"  {tool_count} tools", "dim"))


def mcp_server_error(name: str, msg: str) -> None:
    _say((f"  ✗ MCP server {name}: ", "bold red"), (msg, "red"))


def mcp_server_skipped(name: str) -> None:
    _say((f"  MCP server {name} is disabled, skipping", "dim"))


# general


def info(msg: str) -> None:
    _say((f"  {msg}", "dim"))


def warning(msg: str) -> None:
    _say(("  ⚠ Warning: ", "yellow"), (msg, "yellow"))


def error(msg: str) -> None:
    _say(("Error: ", "bold red"), (msg, "red"))


def repl_banner() -> None:
    _say(("snipcode interactive session. /help lists commands, /exit or Ctrl-D quits.", "dim"))
