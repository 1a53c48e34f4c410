import argparse
import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path

from . import fmt
from .backend import LlamaBackend
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    load_server_configs,
)
from .executor import ToolExecutor
from .mcp_client import McpRegistry
from .prompt import (
    Conversation,
    build_preamble,
    build_prompt,
    estimate_tokens,
    format_rules_for_prompt,
    load_rules,
)
from .report import AgentError, ReportCollector
from .results import render_result
from .toolcall import ToolCallRequest
from .tools import NativeTools
from .transcript import ParsedResponse, parse_response

logger = logging.getLogger(__name__)

MAX_ARG_LOG = 1000
EXIT_ANSWER = 0
EXIT_ERROR = 1
EXIT_ESCALATION = 2


@dataclass
class TurnResult:
    """Outcome of one user turn."""

    answer: str | None
    rounds: int
    needs_escalation: bool
    parsed: ParsedResponse | None = None


async def _generate(backend, prompt: str, on_partial=None) -> tuple[str, str]:
    """Consume one streamed generation. Returns (raw_text, finish_reason)."""
    parts: list[str] = []
    finish_reason = "stop"
    async for chunk in backend.stream(prompt):
        if chunk.done:
            finish_reason = chunk.finish_reason or finish_reason
            break
        parts.append(chunk.text)
        if on_partial is not None:
            # Preview only; the complete text is parsed again once the stream ends.
            on_partial(parse_response("".join(parts)))
    return "".join(parts), finish_reason


async def _run_tool(
    call: ToolCallRequest,
    executor: ToolExecutor,
    round_no: int,
    report: ReportCollector | None,
    verbose: bool,
) -> str:
    """Execute *call* and return the text handed back to the model."""
    if verbose:
        args_json = json.dumps(call.arguments, indent=2, ensure_ascii=False)
        if len(args_json) > MAX_ARG_LOG:
            args_json = args_json[:MAX_ARG_LOG] + "\n..."
        fmt.tool_call(call.name, args_json)

    t0 = time.monotonic()
    result = await executor.execute(call)
    elapsed = time.monotonic() - t0
    text = render_result(result)

    if verbose:
        if result.isError:
            fmt.tool_error(call.name, text.splitlines()[0] if text else "")
        else:
            preview = text.splitlines()[0][:100] if text else ""
            fmt.tool_result(call.name, elapsed, preview)
    if report is not None:
        report.record_tool_call(
            round_no,
            call.name,
            call.arguments,
            succeeded=not result.isError,
            duration=elapsed,
            result_length=len(text),
            error=text if result.isError else None,
        )

    if result.isError:
        return f"Tool '{call.name}' returned an error:\n{text}"
    return text


async def run_conversation_turn(
    conversation: Conversation,
    user_text: str,
    *,
    backend,
    executor: ToolExecutor,
    preamble: str,
    max_rounds: int = 25,
    max_duration: float = 600.0,
    on_partial=None,
    report: ReportCollector | None = None,
    verbose: bool = False,
) -> TurnResult:
    """Answer *user_text*, running tools until the model stops asking for them.

    Appends every exchanged message to *conversation*. Only the first tool
    call of a response is executed; its rendered output goes back to the
    model as the next user message. The turn stops with
    ``needs_escalation`` set once *max_rounds* generations have run or
    *max_duration* seconds have passed without an answer.
    """
    conversation.add("user", user_text)
    started = time.monotonic()
    rounds = 0
    parsed: ParsedResponse | None = None

    while True:
        if rounds >= max_rounds:
            reason = f"no answer after {rounds} rounds"
        elif time.monotonic() - started >= max_duration:
            reason = f"no answer after {max_duration:g}s"
        else:
            reason = None
        if reason is not None:
            logger.info("Turn needs escalation: %s", reason)
            if verbose:
                fmt.warning(f"stopping: {reason}")
                fmt.completion(rounds, "needs_escalation")
            if report is not None:
                report.record_escalation(rounds, reason)
            return TurnResult(
                answer=None, rounds=rounds, needs_escalation=True, parsed=parsed
            )

        rounds += 1
        prompt = build_prompt(conversation.messages, preamble)
        token_est = estimate_tokens(prompt)
        if verbose:
            fmt.turn_header(rounds, max_rounds, token_est)

        t0 = time.monotonic()
        raw, finish_reason = await _generate(backend, prompt, on_partial)
        elapsed = time.monotonic() - t0
        if verbose:
            fmt.llm_timing(elapsed, finish_reason)
        if report is not None:
            report.record_llm_call(rounds, elapsed, token_est, finish_reason)

        parsed = parse_response(raw)
        if verbose and parsed.reasoning:
            fmt.reasoning(parsed.reasoning)
        conversation.add("assistant", raw)

        call = parsed.first_tool_call
        if call is None:
            if verbose:
                fmt.completion(rounds, "ok")
            return TurnResult(
                answer=parsed.content, rounds=rounds, needs_escalation=False, parsed=parsed
            )

        if verbose and len(parsed.tool_calls) > 1:
            fmt.info(
                f"{len(parsed.tool_calls)} tool calls in one response; running only {call.name}"
            )
        tool_text = await _run_tool(call, executor, rounds, report, verbose)
        conversation.add("user", tool_text)


async def build_toolset(
    base_dir: str,
    *,
    servers=None,
    rules: list[tuple[str, str]] | None = None,
    system_prompt: str | None = None,
    verbose: bool = False,
) -> tuple[McpRegistry, ToolExecutor, str]:
    """Connect MCP servers and assemble the executor and system preamble."""
    registry = McpRegistry(verbose=verbose)
    if servers:
        await registry.initialize_servers(list(servers))
    native = NativeTools(base_dir)
    executor = ToolExecutor(native, registry)
    preamble = build_preamble(
        native.list_tools(),
        registry.get_tool_info(),
        format_rules_for_prompt(rules or []),
        system_prompt,
    )
    return registry, executor, preamble


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="snipcode",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options]",
        description="A coding assistant for local llama.cpp models, with native "
        "file tools and MCP tool servers.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Generation server base URL (default: http://127.0.0.1:8080).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model name sent to the server (default: local).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.7).",
    )
    parser.add_argument(
        "--top-k",
        type=int,
        default=_UNSET,
        help="Top-k sampling (default: 40).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: 0.9).",
    )
    parser.add_argument(
        "--n-predict",
        type=int,
        default=_UNSET,
        help="Maximum tokens generated per round (default: 2048).",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=_UNSET,
        help="Generations allowed per question before giving up (default: 25).",
    )
    parser.add_argument(
        "--max-duration",
        type=float,
        default=_UNSET,
        help="Seconds allowed per question before giving up (default: 600).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in role statement at the top of the prompt.",
    )
    parser.add_argument(
        "--no-rules",
        action="store_true",
        default=_UNSET,
        help="Don't load SNIPCODE.md, AGENTS.md or configured rule files.",
    )
    parser.add_argument(
        "--no-mcp",
        action="store_true",
        default=_UNSET,
        help="Don't start any MCP server.",
    )
    parser.add_argument(
        "--mcp-config",
        metavar="FILE",
        default=_UNSET,
        help="Read MCP servers from FILE instead of <base-dir>/.mcp.json.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log protocol traffic and internal details to stderr.",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Probe the generation server's /health endpoint and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )

    return parser


def _make_backend(args) -> LlamaBackend:
    return LlamaBackend(
        args.base_url,
        args.model,
        temperature=args.temperature,
        top_k=args.top_k,
        top_p=args.top_p,
        n_predict=args.n_predict,
    )


def _report_settings(args) -> dict:
    return {
        "base_url": args.base_url,
        "temperature": args.temperature,
        "top_k": args.top_k,
        "top_p": args.top_p,
        "n_predict": args.n_predict,
        "max_rounds": args.max_rounds,
        "max_duration": args.max_duration,
        "rules_loaded": getattr(args, "_rules_loaded", []),
        "mcp_servers": getattr(args, "_mcp_servers", []),
    }


def _write_report(
    args,
    report: ReportCollector | None,
    outcome: str,
    *,
    answer: str | None = None,
    exit_code: int = EXIT_ANSWER,
    rounds: int | None = None,
    error_message: str | None = None,
) -> None:
    if report is None:
        return
    try:
        report.finalize(
            args.report,
            task=args.question or "",
            model=getattr(args, "model", "unknown"),
            settings=_report_settings(args),
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            rounds=rounds if rounds is not None else report.max_round_seen,
            error_message=error_message,
        )
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if args.verbose:
        fmt.info(f"Report written to {args.report}")


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("snipcode")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)
    if args.project:
        parser.error("--project is only valid with --init-config")

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)

    if args.check:
        healthy = asyncio.run(_make_backend(args).health_check())
        if healthy:
            print(f"{args.base_url} is up")
            sys.exit(EXIT_ANSWER)
        fmt.error(f"generation server at {args.base_url} is not reachable")
        sys.exit(EXIT_ERROR)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    report = ReportCollector() if args.report else None

    try:
        exit_code = asyncio.run(_run_main(args, config, report))
    except AgentError as e:
        fmt.error(str(e))
        _write_report(
            args, report, "error", exit_code=EXIT_ERROR, error_message=str(e)
        )
        sys.exit(EXIT_ERROR)
    sys.exit(exit_code)


def _partial_printer(verbose: bool):
    if not verbose or not sys.stderr.isatty():
        return None
    return lambda parsed: fmt.partial(parsed.content)


async def _run_main(args, config: dict, report: ReportCollector | None) -> int:
    base_dir = args.base_dir
    if not Path(base_dir).is_dir():
        raise AgentError(f"base directory does not exist: {base_dir}")

    servers = []
    if not args.no_mcp:
        servers = load_server_configs(
            Path(base_dir), config.get("mcp_servers"), args.mcp_config
        )
    args._mcp_servers = [s.name for s in servers if s.enabled]

    rules = [] if args.no_rules else load_rules(base_dir, args.rules, args.verbose)
    args._rules_loaded = [source for source, _ in rules]

    backend = _make_backend(args)
    registry, executor, preamble = await build_toolset(
        base_dir,
        servers=servers,
        rules=rules,
        system_prompt=args.system_prompt,
        verbose=args.verbose,
    )

    try:
        if args.repl:
            await repl_loop(
                Conversation(),
                backend=backend,
                executor=executor,
                registry=registry,
                preamble=preamble,
                base_dir=base_dir,
                max_rounds=args.max_rounds,
                max_duration=args.max_duration,
                verbose=args.verbose,
            )
            return EXIT_ANSWER

        result = await run_conversation_turn(
            Conversation(),
            args.question,
            backend=backend,
            executor=executor,
            preamble=preamble,
            max_rounds=args.max_rounds,
            max_duration=args.max_duration,
            on_partial=_partial_printer(args.verbose),
            report=report,
            verbose=args.verbose,
        )
    finally:
        await registry.disconnect_all()

    if result.needs_escalation:
        fmt.error(
            f"no answer after {result.rounds} rounds; the question needs a human"
        )
        _write_report(
            args,
            report,
            "needs_escalation",
            exit_code=EXIT_ESCALATION,
            rounds=result.rounds,
        )
        return EXIT_ESCALATION

    print(result.answer)
    _write_report(
        args,
        report,
        "answer",
        answer=result.answer,
        exit_code=EXIT_ANSWER,
        rounds=result.rounds,
    )
    return EXIT_ANSWER


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the conversation so far\n"
        "  /tools             List native and MCP tools\n"
        "  /servers           List connected MCP servers\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_tools(executor: ToolExecutor) -> None:
    lines = [f"  {tool.name}" for tool in executor.native.list_tools()]
    for server, tools in executor.registry.get_tool_info().items():
        lines.extend(f"  {tool.name}  ({server})" for tool in tools)
    fmt.info("Tools:\n" + "\n".join(lines))


def _repl_servers(registry: McpRegistry) -> None:
    servers = registry.get_connected_servers()
    if not servers:
        fmt.info("No MCP servers connected.")
        return
    lines = []
    for name in servers:
        client = registry.get_client(name)
        lines.append(f"  {name}  {len(client.tools)} tools")
    fmt.info("Connected MCP servers:\n" + "\n".join(lines))


async def repl_loop(
    conversation: Conversation,
    *,
    backend,
    executor: ToolExecutor,
    registry: McpRegistry,
    preamble: str,
    base_dir: str,
    max_rounds: int,
    max_duration: float,
    verbose: bool,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".snipcode", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "snipcode> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue

        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            break
        elif cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            dropped = len(conversation)
            conversation.clear()
            fmt.info(f"Conversation cleared ({dropped} messages dropped).")
            continue
        elif cmd == "/tools":
            _repl_tools(executor)
            continue
        elif cmd == "/servers":
            _repl_servers(registry)
            continue

        try:
            result = await run_conversation_turn(
                conversation,
                line,
                backend=backend,
                executor=executor,
                preamble=preamble,
                max_rounds=max_rounds,
                max_duration=max_duration,
                on_partial=_partial_printer(verbose),
                verbose=verbose,
            )
        except AgentError as e:
            fmt.error(str(e))
            continue

        if result.needs_escalation:
            fmt.warning("no answer for this question; try rephrasing or /clear.")
        elif result.answer is not None:
            print(result.answer)


if __name__ == "__main__":
    main()
