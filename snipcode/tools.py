"""Native tool definitions and implementations."""

import asyncio
import fnmatch
import logging
import os
import re
import signal
import sys
from pathlib import Path

from mcp import types

from .results import text_result

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 500
MAX_FIND_RESULTS = 200
MAX_GREP_MATCHES = 100
MIN_EDIT_CONTEXT = 10
COMMAND_TIMEOUT = 30.0
_KILL_WAIT_TIMEOUT = 5

EXCLUDED_FOLDERS = frozenset(
    {
        "node_modules",
        ".git",
        ".venv",
        "venv",
        ".env",
        "__pycache__",
        ".pytest_cache",
        "dist",
        "build",
        ".next",
        ".nuxt",
        "coverage",
        ".coverage",
    }
)

BINARY_EXTENSIONS = frozenset(
    {
        ".docx",
        ".pdf",
        ".doc",
        ".xlsx",
        ".xls",
        ".ppt",
        ".pptx",
        ".zip",
        ".rar",
        ".7z",
        ".tar",
        ".gz",
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".bmp",
        ".tiff",
        ".ico",
        ".svg",
        ".exe",
        ".dll",
        ".so",
        ".dylib",
        ".bin",
    }
)


def _tool(name: str, description: str, properties: dict, required: list[str]) -> types.Tool:
    return types.Tool(
        name=name,
        description=description,
        inputSchema={
            "type": "object",
            "properties": properties,
            "required": required,
        },
    )


_PATH_HINT = "Can be relative to the workspace root or absolute."

NATIVE_TOOLS: list[types.Tool] = [
    _tool(
        "read_file",
        "Read the contents of a file. Returns the file content as text.",
        {"file_path": {"type": "string", "description": f"Path to the file to read. {_PATH_HINT}"}},
        ["file_path"],
    ),
    _tool(
        "create_file",
        "Create a new file with the specified content. Creates parent directories "
        "if they don't exist. Fails if the file already exists; use replace_file "
        "to overwrite.",
        {
            "file_path": {"type": "string", "description": f"Path to the file to create. {_PATH_HINT}"},
            "content": {"type": "string", "description": "Content to write to the file."},
        },
        ["file_path", "content"],
    ),
    _tool(
        "replace_file",
        "Replace the entire contents of a file with new content. Creates the file "
        "if it doesn't exist.",
        {
            "file_path": {"type": "string", "description": f"Path to the file to replace. {_PATH_HINT}"},
            "content": {"type": "string", "description": "New content to write to the file."},
        },
        ["file_path", "content"],
    ),
    _tool(
        "edit_file",
        "Edit a specific part of a file by replacing an exact text snippet with new text.",
        {
            "file_path": {"type": "string", "description": f"Path to the file to edit. {_PATH_HINT}"},
            "old_text": {
                "type": "string",
                "description": "Exact text snippet to be replaced. Must match the file "
                "content exactly (including whitespace) and occur once.",
            },
            "new_text": {
                "type": "string",
                "description": "The replacement text that will substitute `old_text`.",
            },
        },
        ["file_path", "old_text", "new_text"],
    ),
    _tool(
        "list_files",
        "List files and directories in a directory. Returns names, types and sizes.",
        {
            "directory_path": {
                "type": "string",
                "description": f"Directory to list. {_PATH_HINT} Defaults to the workspace root.",
            },
            "recursive": {"type": "boolean", "description": "List recursively. Defaults to false."},
            "include_hidden": {
                "type": "boolean",
                "description": "Include entries starting with '.'. Defaults to false.",
            },
        },
        [],
    ),
    _tool(
        "find_files",
        "Find files whose name contains or matches a pattern. Returns matching paths.",
        {
            "name_pattern": {
                "type": "string",
                "description": "Partial filename, full filename, or regex (with use_regex).",
            },
            "directory_path": {
                "type": "string",
                "description": f"Directory to search in. {_PATH_HINT} Defaults to the workspace root.",
            },
            "case_sensitive": {"type": "boolean", "description": "Defaults to false."},
            "use_regex": {
                "type": "boolean",
                "description": "Treat name_pattern as a regular expression. Defaults to false.",
            },
        },
        ["name_pattern"],
    ),
    _tool(
        "grep_files",
        "Search for a regular expression in file contents. Returns matching lines "
        "with file paths and line numbers.",
        {
            "pattern": {"type": "string", "description": "The search pattern (regular expression)."},
            "directory_path": {
                "type": "string",
                "description": f"Directory to search in. {_PATH_HINT} Defaults to the workspace root.",
            },
            "file_pattern": {
                "type": "string",
                "description": "Optional glob to filter files (e.g. '*.py', 'src/**/*.js').",
            },
            "case_sensitive": {"type": "boolean", "description": "Defaults to false."},
        },
        ["pattern"],
    ),
    _tool(
        "exec_terminal",
        "Execute a shell command and return its combined output. Runs in the "
        "workspace root unless working_directory is given. Times out after 30 seconds.",
        {
            "command": {
                "type": "string",
                "description": "The command to execute. Supports &&, ; and | chaining.",
            },
            "working_directory": {
                "type": "string",
                "description": f"Optional working directory. {_PATH_HINT}",
            },
        },
        ["command"],
    ),
]

_NATIVE_BY_NAME = {tool.name: tool for tool in NATIVE_TOOLS}


def resolve_path(file_path: str, base_dir: str) -> Path:
    """Resolve *file_path* against *base_dir* unless it is absolute."""
    p = Path(file_path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p.resolve()


def _error(text: str) -> types.CallToolResult:
    return text_result(text, is_error=True)


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def _walk(root: Path, include_hidden: bool = False):
    """Yield (dirpath, dirnames, filenames), pruning excluded and hidden folders."""
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(
            d
            for d in dirs
            if d not in EXCLUDED_FOLDERS and (include_hidden or not d.startswith("."))
        )
        files = sorted(f for f in files if include_hidden or not f.startswith("."))
        yield Path(dirpath), dirs, files


def _is_binary(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\x00" in f.read(BINARY_CHECK_BYTES)
    except OSError:
        return True


def _truncate(text: str) -> str:
    data = text.encode("utf-8")
    if len(data) <= MAX_OUTPUT_BYTES:
        return text
    cut = data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return cut + f"\n[truncated at {MAX_OUTPUT_BYTES // 1024}KB]"


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def _read_file(file_path: str, base_dir: str) -> types.CallToolResult:
    ext = Path(file_path).suffix.lower()
    if ext in BINARY_EXTENSIONS:
        return _error(
            f'Cannot read binary file "{file_path}". '
            f"Binary files ({ext}) cannot be read as text."
        )

    resolved = resolve_path(file_path, base_dir)
    if not resolved.exists():
        return _error(f"Error reading file {file_path}: file does not exist")
    if resolved.is_dir():
        return _error(
            f"Error reading file {file_path}: is a directory, use list_files instead"
        )
    if _is_binary(resolved):
        return _error(f'Cannot read binary file "{file_path}".')

    try:
        text = resolved.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        return _error(f"Error reading file {file_path}: {e}")
    return text_result(_truncate(text))


def _create_file(file_path: str, content: str, base_dir: str) -> types.CallToolResult:
    resolved = resolve_path(file_path, base_dir)
    if resolved.exists():
        return _error(
            f"Error: File {file_path} already exists. Use replace_file to overwrite it."
        )
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    return text_result(f"Successfully created file: {file_path}")


def _replace_file(file_path: str, content: str, base_dir: str) -> types.CallToolResult:
    resolved = resolve_path(file_path, base_dir)
    if resolved.is_dir():
        return _error(f"Error replacing file {file_path}: is a directory")
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    return text_result(f"Successfully replaced file: {file_path}")


def _edit_file(
    file_path: str, old_text: str, new_text: str, base_dir: str
) -> types.CallToolResult:
    stripped = old_text.strip()
    if len(stripped) < MIN_EDIT_CONTEXT:
        return _error(
            f"Error: old_text is too short ({len(stripped)} chars). Include a few "
            "lines of context around the change so the match is unique, or use "
            "replace_file to rewrite the whole file."
        )

    resolved = resolve_path(file_path, base_dir)
    if not resolved.is_file():
        return _error(f"Error editing file {file_path}: file does not exist")

    content = resolved.read_text(encoding="utf-8")
    occurrences = content.count(old_text)
    if occurrences == 0:
        return _error(
            f"Error: Could not find the specified text in {file_path}. The old_text "
            "must match exactly (including whitespace and line breaks)."
        )
    if occurrences > 1:
        return _error(
            f"Error: Found {occurrences} matches for old_text in {file_path}. "
            "Include more surrounding context to make the match unique."
        )

    resolved.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
    return text_result(f"Successfully edited {file_path}")


# ---------------------------------------------------------------------------
# Listing and search tools
# ---------------------------------------------------------------------------


def _resolve_dir(directory_path: str | None, base_dir: str) -> Path:
    return resolve_path(directory_path or ".", base_dir)


def _list_files(
    directory_path: str | None,
    base_dir: str,
    recursive: bool = False,
    include_hidden: bool = False,
) -> types.CallToolResult:
    root = _resolve_dir(directory_path, base_dir)
    if not root.is_dir():
        return _error(f"Error: {directory_path or 'path'} is not a directory")

    entries: list[str] = []
    truncated = False

    def _add(path: Path) -> bool:
        rel = path.relative_to(root).as_posix()
        if path.is_dir():
            entries.append(f"[dir]  {rel}/")
        else:
            entries.append(f"[file] {rel} ({_format_size(path.stat().st_size)})")
        return len(entries) < MAX_LIST_RESULTS

    if recursive:
        for dirpath, dirs, files in _walk(root, include_hidden):
            for name in [*dirs, *files]:
                if not _add(dirpath / name):
                    truncated = True
                    break
            if truncated:
                break
    else:
        for child in sorted(root.iterdir()):
            if child.name in EXCLUDED_FOLDERS and child.is_dir():
                continue
            if not include_hidden and child.name.startswith("."):
                continue
            if not _add(child):
                truncated = True
                break

    listing = "\n".join(entries) if entries else "(empty directory)"
    if truncated:
        listing += f"\n(Results truncated at {MAX_LIST_RESULTS} entries.)"
    return text_result(f"Files in {directory_path or 'workspace root'}:\n\n{listing}")


def _find_files(
    name_pattern: str,
    base_dir: str,
    directory_path: str | None = None,
    case_sensitive: bool = False,
    use_regex: bool = False,
) -> types.CallToolResult:
    root = _resolve_dir(directory_path, base_dir)
    if not root.is_dir():
        return _error(f"Error: {directory_path or 'path'} is not a directory")

    if use_regex:
        try:
            regex = re.compile(name_pattern, 0 if case_sensitive else re.IGNORECASE)
        except re.error as e:
            return _error(f'Error: Invalid regex pattern "{name_pattern}": {e}')

        def matches(name: str) -> bool:
            return regex.search(name) is not None

    else:
        needle = name_pattern if case_sensitive else name_pattern.lower()

        def matches(name: str) -> bool:
            return needle in (name if case_sensitive else name.lower())

    found: list[str] = []
    for dirpath, _dirs, files in _walk(root):
        for filename in files:
            if matches(filename):
                found.append((dirpath / filename).relative_to(root).as_posix())
        if len(found) >= MAX_FIND_RESULTS:
            break

    if not found:
        return text_result(f'No files found matching pattern "{name_pattern}"')
    found = found[:MAX_FIND_RESULTS]
    return text_result(
        f'Found {len(found)} file(s) matching "{name_pattern}":\n\n' + "\n".join(found)
    )


def _grep_files(
    pattern: str,
    base_dir: str,
    directory_path: str | None = None,
    file_pattern: str | None = None,
    case_sensitive: bool = False,
) -> types.CallToolResult:
    try:
        regex = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
    except re.error as e:
        return _error(f'Error: Invalid regex pattern "{pattern}": {e}')

    root = _resolve_dir(directory_path, base_dir)
    if not root.is_dir():
        return _error(f"Error: {directory_path or 'path'} is not a directory")

    results: list[str] = []
    truncated = False
    for dirpath, _dirs, files in _walk(root):
        for filename in files:
            filepath = dirpath / filename
            rel = filepath.relative_to(root).as_posix()
            if file_pattern and not (
                fnmatch.fnmatch(filename, file_pattern)
                or fnmatch.fnmatch(rel, file_pattern)
            ):
                continue
            if _is_binary(filepath):
                continue
            try:
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    results.append(f"{rel}:{line_no}: {line[:MAX_LINE_LENGTH]}")
                    if len(results) >= MAX_GREP_MATCHES:
                        truncated = True
                        break
            if truncated:
                break
        if truncated:
            break

    if not results:
        return text_result(f'No matches found for pattern "{pattern}"')
    output = f'Found {len(results)} match(es) for pattern "{pattern}":\n\n' + "\n".join(
        results
    )
    if truncated:
        output += f"\n(Results truncated at {MAX_GREP_MATCHES} matches.)"
    return text_result(_truncate(output))


# ---------------------------------------------------------------------------
# Shell tool
# ---------------------------------------------------------------------------


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        if sys.platform != "win32":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


async def _exec_terminal(
    command: str,
    base_dir: str,
    working_directory: str | None = None,
    timeout: float = COMMAND_TIMEOUT,
) -> types.CallToolResult:
    cwd = resolve_path(working_directory or ".", base_dir)
    if not cwd.is_dir():
        return _error(f"Error executing command: {cwd} is not a directory")

    kwargs: dict = {}
    if sys.platform != "win32":
        kwargs["start_new_session"] = True
    proc = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        **kwargs,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        _kill_process_group(proc)
        try:
            await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_TIMEOUT)
        except TimeoutError:
            logger.warning("command did not exit after kill: %s", command)
        return _error(f"Command timed out after {timeout:g}s.")

    out = stdout.decode("utf-8", errors="replace").strip()
    err = stderr.decode("utf-8", errors="replace").strip()
    output = out
    if err:
        output += f"\n\nSTDERR:\n{err}" if out else err
    if proc.returncode != 0:
        output += f"\n\nExit code: {proc.returncode}" if output else f"Exit code: {proc.returncode}"
    if not output:
        output = "Command executed successfully (no output)"
    return text_result(_truncate(output), is_error=proc.returncode != 0)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class NativeTools:
    """The tools implemented in-process, rooted at a base directory."""

    def __init__(self, base_dir: str = ".", *, command_timeout: float = COMMAND_TIMEOUT):
        self.base_dir = str(Path(base_dir).resolve())
        self.command_timeout = command_timeout

    def list_tools(self) -> list[types.Tool]:
        return list(NATIVE_TOOLS)

    def get_tool(self, name: str) -> types.Tool | None:
        return _NATIVE_BY_NAME.get(name)

    def has_tool(self, name: str) -> bool:
        return name in _NATIVE_BY_NAME

    async def call(self, name: str, args: dict) -> types.CallToolResult:
        """Run a native tool. Failures come back as error results, never raised."""
        try:
            if name == "exec_terminal":
                return await _exec_terminal(
                    args["command"],
                    self.base_dir,
                    working_directory=args.get("working_directory"),
                    timeout=self.command_timeout,
                )
            return await asyncio.to_thread(self.dispatch, name, args)
        except Exception as e:
            logger.debug("native tool %s failed", name, exc_info=True)
            return _error(f"Error executing {name}: {e}")

    def dispatch(self, name: str, args: dict) -> types.CallToolResult:
        """Route a synchronous tool call to its implementation."""
        base_dir = self.base_dir
        if name == "read_file":
            return _read_file(args["file_path"], base_dir)
        elif name == "create_file":
            return _create_file(args["file_path"], args["content"], base_dir)
        elif name == "replace_file":
            return _replace_file(args["file_path"], args["content"], base_dir)
        elif name == "edit_file":
            return _edit_file(
                args["file_path"], args["old_text"], args["new_text"], base_dir
            )
        elif name == "list_files":
            return _list_files(
                args.get("directory_path"),
                base_dir,
                recursive=args.get("recursive", False),
                include_hidden=args.get("include_hidden", False),
            )
        elif name == "find_files":
            return _find_files(
                args["name_pattern"],
                base_dir,
                directory_path=args.get("directory_path"),
                case_sensitive=args.get("case_sensitive", False),
                use_regex=args.get("use_regex", False),
            )
        elif name == "grep_files":
            return _grep_files(
                args["pattern"],
                base_dir,
                directory_path=args.get("directory_path"),
                file_pattern=args.get("file_pattern"),
                case_sensitive=args.get("case_sensitive", False),
            )
        else:
            return _error(f"Unknown tool: {name}")
