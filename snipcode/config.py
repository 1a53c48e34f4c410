"""TOML settings and MCP server tables.

Settings live in two layers: ``$XDG_CONFIG_HOME/snipcode/config.toml`` for
the user and ``snipcode.toml`` at the base directory for the project.
Command-line flags beat the project layer, which beats the user layer,
which beats the built-in defaults.
"""

import argparse
import json
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .mcp_client import ServerConfig, validate_server_name
from .report import ConfigError

_UNSET = object()  # argparse default meaning "flag not given"

PROJECT_CONFIG_NAME = "snipcode.toml"
MCP_JSON_NAME = ".mcp.json"

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "base_url": str,
    "model": str,
    "temperature": (int, float),
    "top_k": int,
    "top_p": (int, float),
    "n_predict": int,
    "max_rounds": int,
    "max_duration": (int, float),
    "system_prompt": str,
    "rules": list,
    "no_rules": bool,
    "no_mcp": bool,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_KEYS = frozenset({"top_k", "n_predict", "max_rounds", "max_duration"})

_SERVER_FIELDS: dict[str, type] = {
    "command": str,
    "args": list,
    "env": dict,
    "enabled": bool,
}

# Value each flag falls back to when neither the CLI nor a config file set it.
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "base_url": "http://127.0.0.1:8080",
    "model": "local",
    "temperature": 0.7,
    "top_k": 40,
    "top_p": 0.9,
    "n_predict": 2048,
    "max_rounds": 25,
    "max_duration": 600,
    "system_prompt": None,
    "rules": [],
    "no_rules": False,
    "no_mcp": False,
    "mcp_config": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}


def global_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "snipcode"


def _describe(expected: type | tuple[type, ...]) -> str:
    types_ = expected if isinstance(expected, tuple) else (expected,)
    return " or ".join(t.__name__ for t in types_)


def _require_strings(values, where: str) -> None:
    """Raise ConfigError unless every item of *values* is a str.

    Dicts are checked by value and reported as ``where.key``; sequences are
    reported as ``where[i]``.
    """
    if isinstance(values, dict):
        labelled = ((f"{where}.{k}", v) for k, v in values.items())
    else:
        labelled = ((f"{where}[{i}]", v) for i, v in enumerate(values))
    for label, value in labelled:
        if not isinstance(value, str):
            raise ConfigError(f"{label}: expected string, got {type(value).__name__}")


def _check_settings(settings: dict, source: str) -> dict:
    """Type-check flat settings and return only the recognised ones.

    Unknown keys produce a warning on stderr and are dropped.
    """
    known = {}
    for key, value in settings.items():
        expected = CONFIG_KEYS.get(key)
        if expected is None:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue
        # bool subclasses int
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(f"{source}: {key!r} expected {_describe(expected)}, got bool")
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_describe(expected)}, "
                f"got {type(value).__name__}"
            )
        if expected is list:
            _require_strings(value, f"{source}: {key}")
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")
        known[key] = value
    return known


def _check_servers(servers: dict, source: str) -> None:
    for name, table in servers.items():
        validate_server_name(name)
        where = f"{source}: mcp_servers.{name}"
        if not isinstance(table, dict):
            raise ConfigError(f"{where} must be a table")
        if "url" in table:
            raise ConfigError(f"{where}: only stdio servers are supported")
        if "command" not in table:
            raise ConfigError(f"{where} must have 'command'")
        for field, expected in _SERVER_FIELDS.items():
            if field in table and not isinstance(table[field], expected):
                raise ConfigError(
                    f"{where}.{field}: expected {expected.__name__}, "
                    f"got {type(table[field]).__name__}"
                )
        if "args" in table:
            _require_strings(table["args"], f"{where}.args")
        if "env" in table:
            _require_strings(table["env"], f"{where}.env")


def _load_layer(path: Path) -> tuple[dict, dict | None]:
    """Read one TOML layer as (settings, server tables).

    A missing file is an empty layer. Relative ``rules`` entries are
    anchored at the file's own directory.
    """
    if not path.is_file():
        return {}, None
    source = str(path)
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{source}: invalid TOML: {e}") from e

    servers = raw.pop("mcp_servers", None)
    if servers is not None:
        if not isinstance(servers, dict):
            raise ConfigError(f"{source}: 'mcp_servers' must be a table")
        _check_servers(servers, source)

    settings = _check_settings(raw, source)
    if "rules" in settings:
        anchored = []
        for entry in settings["rules"]:
            p = Path(entry).expanduser()
            anchored.append(str(p if p.is_absolute() else path.parent / p))
        settings["rules"] = anchored
    return settings, servers


def load_config(base_dir: Path) -> dict:
    """Merge the user and project layers into one flat dict.

    Only keys present in a file show up; defaults are applied later by
    :func:`apply_config_to_args`. Server tables from both layers are merged
    by name under ``mcp_servers``, project entries winning.
    """
    user_settings, user_servers = _load_layer(global_config_dir() / "config.toml")
    project_settings, project_servers = _load_layer(
        Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    )

    merged = {**user_settings, **project_settings}
    servers = merge_mcp_configs(project_servers, user_servers)
    if servers:
        merged["mcp_servers"] = servers
    return merged


def load_mcp_json(path: Path) -> dict[str, dict]:
    """Read the ``mcpServers`` object of a Claude-style ``.mcp.json`` file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")

    servers = data.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ConfigError(f"{path}: 'mcpServers' must be a JSON object")
    _check_servers(servers, str(path))
    return servers


def merge_mcp_configs(
    preferred: dict[str, dict] | None,
    fallback: dict[str, dict] | None,
) -> dict[str, dict]:
    """Union of two server maps; *preferred* wins when a name is in both."""
    return {**(fallback or {}), **(preferred or {})}


def build_server_configs(servers: dict[str, dict]) -> list[ServerConfig]:
    return [
        ServerConfig(
            name=name,
            command=table["command"],
            args=tuple(table.get("args", ())),
            env=dict(table.get("env", {})),
            enabled=table.get("enabled", True),
        )
        for name, table in servers.items()
    ]


def load_server_configs(
    base_dir: Path, toml_servers: dict | None, mcp_config: str | None = None
) -> list[ServerConfig]:
    """Collect MCP servers from the TOML tables and a .mcp.json file.

    An explicit *mcp_config* must exist; the default <base_dir>/.mcp.json
    is optional. TOML entries shadow JSON entries of the same name.
    """
    if mcp_config:
        json_servers = load_mcp_json(Path(mcp_config).expanduser())
    else:
        default = Path(base_dir) / MCP_JSON_NAME
        json_servers = load_mcp_json(default) if default.is_file() else None
    return build_server_configs(merge_mcp_configs(toml_servers, json_servers))


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill flags the user did not pass, first from *config*, then from defaults."""

    def unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # one config key drives the --color/--no-color pair
    if "color" in config and unset("color") and unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key not in ("color", "mcp_servers") and unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if unset(dest):
            setattr(args, dest, default)


_TEMPLATE = """\
# snipcode settings
# {scope} config: {where}
#
# Flags given on the command line take precedence over this file.

# llama.cpp server
# base_url = "http://127.0.0.1:8080"
# model = "local"

# sampling
# temperature = 0.7
# top_k = 40
# top_p = 0.9
# n_predict = 2048

# limits for a single user turn
# max_rounds = 25
# max_duration = 600

# prompt
# system_prompt = "You are a helpful coding assistant."
# rules = ["docs/style.md"]
# no_rules = false

# output
# color = true
# quiet = false

# MCP servers (stdio only)
# no_mcp = false
# [mcp_servers.filesystem]
# command = "npx"
# args = ["-y", "@modelcontextprotocol/server-filesystem", "."]
# env = {{ LOG_LEVEL = "info" }}
# enabled = true
"""


def generate_config(project: bool = False) -> str:
    """Return a config file template with every setting commented out."""
    if project:
        return _TEMPLATE.format(scope="Project", where=f"<base_dir>/{PROJECT_CONFIG_NAME}")
    return _TEMPLATE.format(scope="Global", where="~/.config/snipcode/config.toml")
