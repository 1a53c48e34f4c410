"""Tests for the stderr diagnostics in snipcode.fmt."""

from io import StringIO

from rich.console import Console

from snipcode import fmt


def _capture(func, *args, **kwargs):
    """Run *func* against an uncoloured in-memory console and return what it printed."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=80)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestTurnHeader:
    def test_contains_round_info(self):
        out = _capture(fmt.turn_header, 3, 10, 4200)
        assert "Round 3/10" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_stop_reason(self):
        out = _capture(fmt.llm_timing, 1.4, "stop")
        assert "LLM responded in 1.4s" in out
        assert "finish_reason=stop" in out


class TestCompletion:
    def test_ok(self):
        out = _capture(fmt.completion, 5, "ok")
        assert "Turn finished: 5 rounds" in out
        assert "exit=" not in out

    def test_needs_escalation(self):
        out = _capture(fmt.completion, 25, "needs_escalation")
        assert "25 rounds, exit=needs_escalation" in out


class TestToolOutput:
    def test_tool_call_with_args(self):
        out = _capture(fmt.tool_call, "read_file", '{\n  "file_path": "a.py"\n}')
        assert "read_file" in out
        assert '"file_path": "a.py"' in out

    def test_tool_result(self):
        out = _capture(fmt.tool_result, "grep_files", 0.25, "Found 3 match(es)")
        assert "grep_files" in out
        assert "0.2s" in out or "0.3s" in out
        assert "Found 3 match(es)" in out

    def test_tool_error(self):
        out = _capture(fmt.tool_error, "read_file", "file does not exist")
        assert "read_file" in out
        assert "file does not exist" in out


class TestModelOutput:
    def test_reasoning_multiline(self):
        out = _capture(fmt.reasoning, "first\nsecond")
        lines = out.splitlines()
        assert "[reasoning] first" in lines[0]
        assert lines[1].strip() == "second"

    def test_partial_keeps_tail(self):
        out = _capture(fmt.partial, "x" * 200 + "END")
        assert out.rstrip("\r\n").endswith("END")


class TestMcpMessages:
    def test_server_start(self):
        out = _capture(fmt.mcp_server_start, "github", 12)
        assert "MCP server github" in out
        assert "12 tools" in out

    def test_server_error(self):
        out = _capture(fmt.mcp_server_error, "github", "spawn failed")
        assert "github" in out
        assert "spawn failed" in out

    def test_server_skipped(self):
        out = _capture(fmt.mcp_server_skipped, "off")
        assert "MCP server off is disabled, skipping" in out


class TestDiagnostics:
    def test_warning(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")

    def test_error(self):
        assert "Error: broken" in _capture(fmt.error, "broken")

    def test_markup_not_interpreted(self):
        out = _capture(fmt.error, "[bold]not markup[/bold]")
        assert "[bold]not markup[/bold]" in out


class TestInit:
    def test_no_color(self):
        old = fmt._console
        try:
            fmt.init(no_color=True)
            assert fmt._console.no_color is True
            assert fmt._console.stderr is True
        finally:
            fmt._console = old
