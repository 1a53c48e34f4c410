"""Building and rendering tool results.

Native and remote tools both produce ``mcp.types.CallToolResult``: an
ordered list of content blocks tagged by ``type`` plus an ``isError`` flag.
"""

from mcp import types


def text_result(text: str, *, is_error: bool = False) -> types.CallToolResult:
    """Build a single-text-block result."""
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=is_error,
    )


def render_block(block) -> str:
    """Render one content block as text for the model."""
    block_type = getattr(block, "type", None)
    if block_type == "text":
        return block.text
    if block_type in ("image", "audio"):
        return f"[{block_type}: {block.mimeType}, {len(block.data)} bytes]"
    if block_type == "resource":
        resource = block.resource
        text = getattr(resource, "text", None)
        if text:
            return text
        return f"[resource: {resource.uri}]"
    if block_type == "resource_link":
        return f"[resource: {block.uri}]"
    return f"[{block_type or 'unknown'}: unsupported content type]"


def render_result(result: types.CallToolResult) -> str:
    """Join the rendered blocks of *result* with newlines."""
    text = "\n".join(render_block(block) for block in result.content)
    return text if text else "(empty result)"
