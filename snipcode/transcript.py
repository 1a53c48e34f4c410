"""Parsing of raw model output into reasoning, tool calls and user-facing content.

Some models structure their output as a tagged transcript::

    <|start|>assistant<|channel|>think<|message|>...<|end|>
    <|start|>assistant<|channel|>final<|message|>Hello!<|end|>

Blocks run from ``<|start|>`` to ``<|end|>``; a block still missing its end
marker is an incomplete emission and is ignored.
"""

import re
from dataclasses import dataclass, field

from .toolcall import ToolCallRequest, extract_tool_calls

START_MARKER = "<|start|>"
END_MARKER = "<|end|>"

_TAG_RE = re.compile(r"<\|(\w+)\|>(.*?)(?=<\|\w+\|>|$)", re.DOTALL)
_REASONING_TAG_RE = re.compile(r"<(think|thinking)>(.*?)</\1>", re.DOTALL)

# Tags that shape the transcript rather than carry metadata.
_STRUCTURAL_TAGS = {"start", "end", "channel", "message", "final", "assistant"}


@dataclass
class TranscriptBlock:
    role: str = ""
    channels: list[str] = field(default_factory=list)
    # (channel, text) pairs in order of appearance
    segments: list[tuple[str, str]] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(text for _, text in self.segments)


@dataclass
class Transcript:
    blocks: list[TranscriptBlock]
    channels: list[str]
    metadata: dict[str, str]

    @property
    def content(self) -> str:
        """Text of the last block that produced any."""
        for block in reversed(self.blocks):
            if block.text:
                return block.text
        return ""

    def channel_text(self, channel: str) -> str:
        return " ".join(
            text
            for block in self.blocks
            for name, text in block.segments
            if name == channel
        )


@dataclass
class ParsedResponse:
    content: str
    raw: str
    reasoning: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    channels: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def first_tool_call(self) -> ToolCallRequest | None:
        return self.tool_calls[0] if self.tool_calls else None

    def legacy(self) -> dict:
        """Return the older ``finalMessage``/``channels``/``metadata`` shape."""
        return {
            "finalMessage": self.content,
            "channels": list(self.channels),
            "metadata": dict(self.metadata),
        }


def has_transcript_markers(text: str) -> bool:
    return START_MARKER in text and END_MARKER in text


def _parse_block(body: str, metadata: dict[str, str]) -> TranscriptBlock:
    block = TranscriptBlock()
    first_tag = body.find("<|")
    block.role = (body if first_tag == -1 else body[:first_tag]).strip()

    channel = ""
    for m in _TAG_RE.finditer(body):
        tag, value = m.group(1), m.group(2).strip()
        if tag == "channel":
            channel = value
            if value not in block.channels:
                block.channels.append(value)
        elif tag in ("message", "final"):
            if value:
                block.segments.append((channel or tag, value))
        elif tag not in _STRUCTURAL_TAGS:
            metadata[tag] = value
    return block


def parse_transcript(text: str) -> Transcript | None:
    """Parse the tagged transcript in *text*, or return None if there is none."""
    if not has_transcript_markers(text):
        return None

    blocks: list[TranscriptBlock] = []
    channels: list[str] = []
    metadata: dict[str, str] = {}

    for chunk in text.split(START_MARKER)[1:]:
        end = chunk.find(END_MARKER)
        if end == -1:
            continue
        block = _parse_block(chunk[:end], metadata)
        for name in block.channels:
            if name not in channels:
                channels.append(name)
        blocks.append(block)

    return Transcript(blocks=blocks, channels=channels, metadata=metadata)


def extract_reasoning(text: str, transcript: Transcript | None = None) -> str | None:
    """Find reasoning text: wrapper tags first, then a think or reasoning channel."""
    wrapped = [m.group(2).strip() for m in _REASONING_TAG_RE.finditer(text)]
    wrapped = [w for w in wrapped if w]
    if wrapped:
        return "\n\n".join(wrapped)
    if transcript is not None:
        for channel in ("think", "reasoning"):
            found = transcript.channel_text(channel)
            if found:
                return found
    return None


def parse_response(text: str) -> ParsedResponse:
    """Split raw generated *text* into reasoning, tool calls and content.

    Tool calls are searched for in the whole raw text, not only in the
    transcript content. Without transcript markers the content is the
    input unchanged.
    """
    transcript = parse_transcript(text)
    if transcript is None:
        content = text
        channels: list[str] = []
        metadata: dict[str, str] = {}
    else:
        content = transcript.content or text
        channels = transcript.channels
        metadata = transcript.metadata

    return ParsedResponse(
        content=content,
        raw=text,
        reasoning=extract_reasoning(text, transcript),
        tool_calls=extract_tool_calls(text) or None,
        channels=channels,
        metadata=metadata,
    )
