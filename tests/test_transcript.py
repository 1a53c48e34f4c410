"""Tests for parsing tagged transcripts, reasoning and tool calls out of model output."""

from snipcode.transcript import (
    extract_reasoning,
    parse_response,
    parse_transcript,
)


class TestPlainText:
    def test_passthrough(self):
        parsed = parse_response("Hello there.")
        assert parsed.content == "Hello there."
        assert parsed.reasoning is None
        assert parsed.tool_calls is None
        assert parsed.channels == []

    def test_only_start_marker_is_plain(self):
        text = "<|start|>assistant<|message|>partial"
        assert parse_transcript(text) is None
        assert parse_response(text).content == text

    def test_raw_kept(self):
        parsed = parse_response("abc")
        assert parsed.raw == "abc"


class TestTranscript:
    def test_final_channel(self):
        parsed = parse_response(
            "<|start|>assistant<|channel|>final<|message|>Hi!<|end|>"
        )
        assert parsed.content == "Hi!"
        assert parsed.reasoning is None
        assert parsed.channels == ["final"]

    def test_think_then_final(self):
        text = (
            "<|start|>assistant<|channel|>think<|message|>The user greets me.<|end|>"
            "<|start|>assistant<|channel|>final<|message|>Hello! I'm here to help "
            "with prototyping. What can I assist you with?<|end|>"
        )
        parsed = parse_response(text)
        assert parsed.content == (
            "Hello! I'm here to help with prototyping. What can I assist you with?"
        )
        assert parsed.reasoning == "The user greets me."
        assert parsed.channels == ["think", "final"]

    def test_reasoning_channel(self):
        text = (
            "<|start|>assistant<|channel|>reasoning<|message|>Check the file.<|end|>"
            "<|start|>assistant<|channel|>final<|message|>Done.<|end|>"
        )
        parsed = parse_response(text)
        assert parsed.reasoning == "Check the file."
        assert parsed.content == "Done."

    def test_incomplete_trailing_block_dropped(self):
        text = (
            "<|start|>assistant<|channel|>final<|message|>First.<|end|>"
            "<|start|>assistant<|channel|>final<|message|>Still typ"
        )
        assert parse_response(text).content == "First."

    def test_metadata_collected(self):
        text = (
            "<|start|>assistant<|constrain|>json<|channel|>final"
            "<|message|>ok<|end|>"
        )
        parsed = parse_response(text)
        assert parsed.metadata == {"constrain": "json"}
        assert parsed.content == "ok"

    def test_block_role(self):
        transcript = parse_transcript(
            "<|start|>assistant<|channel|>final<|message|>x<|end|>"
        )
        assert transcript.blocks[0].role == "assistant"

    def test_empty_blocks_fall_back_to_raw(self):
        text = "<|start|>assistant<|channel|>final<|message|><|end|>"
        assert parse_response(text).content == text

    def test_legacy_shape(self):
        parsed = parse_response(
            "<|start|>assistant<|channel|>final<|message|>Hi!<|end|>"
        )
        assert parsed.legacy() == {
            "finalMessage": "Hi!",
            "channels": ["final"],
            "metadata": {},
        }


class TestReasoningTags:
    def test_think_tag(self):
        parsed = parse_response("<think>plan it</think>The answer is 4.")
        assert parsed.reasoning == "plan it"

    def test_thinking_tag(self):
        assert extract_reasoning("<thinking>a</thinking> b <thinking>c</thinking>") == "a\n\nc"

    def test_tags_win_over_channel(self):
        text = (
            "<think>tagged</think>"
            "<|start|>assistant<|channel|>think<|message|>channel<|end|>"
        )
        assert parse_response(text).reasoning == "tagged"


class TestToolCallsInResponse:
    def test_tool_call_found_in_raw_text(self):
        text = (
            "<|start|>assistant<|channel|>final<|message|>Reading it now. "
            'tool_call(name="read_file", arguments={"file_path": "a.py"})<|end|>'
        )
        parsed = parse_response(text)
        assert parsed.has_tool_calls
        assert parsed.first_tool_call.name == "read_file"

    def test_no_tool_calls(self):
        parsed = parse_response("nothing to do")
        assert not parsed.has_tool_calls
        assert parsed.first_tool_call is None
