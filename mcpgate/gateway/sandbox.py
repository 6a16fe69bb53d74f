"""
Launch sandbox - the only gate through which a local tool server is spawned.

Commands are checked against fixed allow-lists: one runner executable, a
handful of runner flags, and an explicit list of tool-server packages. No
pattern matching is done on package names. Environment variables handed to a
subprocess are filtered per server type; the ambient process environment is
never inherited.

Every decision is written to the ``mcpgate.audit`` logger as a JSON line.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

audit_logger = logging.getLogger("mcpgate.audit")

ALLOWED_COMMANDS = ("npx",)

# Filesystem and database servers are excluded on purpose.
ALLOWED_PACKAGES = (
    "@modelcontextprotocol/server-github",
    "@modelcontextprotocol/server-slack",
    "@modelcontextprotocol/server-memory",
    "@modelcontextprotocol/server-brave-search",
)

ALLOWED_NPX_FLAGS = ("-y", "--yes")

SENSITIVE_PATH_PREFIXES = ("/etc", "/root")

ALLOWED_ENV_VARS: Dict[str, List[str]] = {
    "github": ["GITHUB_PERSONAL_ACCESS_TOKEN", "GITHUB_USERNAME"],
    "slack": ["SLACK_BOT_TOKEN", "SLACK_TEAM_ID"],
    "memory": [],
    "brave-search": ["BRAVE_API_KEY"],
}

POSIX_SAFE_PATH = "/usr/local/bin:/usr/bin:/bin"

_SHELL_METACHARACTERS = re.compile(r"[;&|`$()<>]")
_CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")
_NON_TYPE_CHARACTERS = re.compile(r"[^a-z-]")


@dataclass
class SanitizedCommand:
    """A command line that passed validation."""

    command: str
    args: List[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    """Outcome of :func:`validate_command`."""

    valid: bool
    error: Optional[str] = None
    sanitized: Optional[SanitizedCommand] = None

    @classmethod
    def reject(cls, reason: str) -> "ValidationResult":
        return cls(valid=False, error=reason)


def log_security_event(event_type: str, **details) -> None:
    """Write one structured audit record. Never affects control flow."""
    record = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        **details,
    }
    audit_logger.info(json.dumps(record, default=str))


# ── Command validation ────────────────────────────────────────────────────


def validate_command(command: str, args: Optional[List[str]]) -> ValidationResult:
    """
    Validate a local-process launch command.

    Args:
        command: Executable name, must be on the runner allow-list.
        args: Argument vector; flags plus exactly one allowed package.

    Returns:
        ValidationResult with ``sanitized`` set on success, or ``error`` set
        to a human-readable reason on rejection.
    """
    args = list(args or [])
    result = _check_command(command, args)

    if result.valid:
        log_security_event("COMMAND_VALIDATED", command=command, args=args)
    else:
        log_security_event(
            "COMMAND_VALIDATION_FAILED", command=command, args=args, error=result.error
        )
    return result


def _check_command(command: str, args: List[str]) -> ValidationResult:
    if command not in ALLOWED_COMMANDS:
        return ValidationResult.reject(
            f'Command not allowed: "{command}". '
            f"Only these commands are permitted: {', '.join(ALLOWED_COMMANDS)}"
        )

    if _SHELL_METACHARACTERS.search(command):
        return ValidationResult.reject("Command contains invalid characters")

    if not args:
        return ValidationResult.reject("Arguments required")

    # Path traversal is checked across all arguments before anything else.
    for arg in args:
        if _looks_like_traversal(arg):
            return ValidationResult.reject(f'Path traversal attempt detected in argument: "{arg}"')

    for arg in args:
        if _SHELL_METACHARACTERS.search(arg):
            return ValidationResult.reject(f'Argument contains invalid characters: "{arg}"')

    if command == "npx":
        return _check_npx_args(args)

    return ValidationResult.reject("Unknown command validation logic")


def _looks_like_traversal(arg: str) -> bool:
    if ".." in arg or "~" in arg:
        return True
    return any(arg.startswith(prefix) for prefix in SENSITIVE_PATH_PREFIXES)


def _check_npx_args(args: List[str]) -> ValidationResult:
    flags = [a for a in args if a.startswith("-")]
    positionals = [a for a in args if not a.startswith("-")]

    for flag in flags:
        if flag not in ALLOWED_NPX_FLAGS:
            return ValidationResult.reject(
                f'Flag not allowed: "{flag}". Allowed flags: {", ".join(ALLOWED_NPX_FLAGS)}'
            )

    if len(positionals) != 1:
        return ValidationResult.reject("Must specify exactly one package name")

    package = positionals[0]
    if package not in ALLOWED_PACKAGES:
        return ValidationResult.reject(
            f'Package not allowed: "{package}". Allowed packages: {", ".join(ALLOWED_PACKAGES)}'
        )

    return ValidationResult(
        valid=True,
        sanitized=SanitizedCommand(
            command="npx",
            args=[_SHELL_METACHARACTERS.sub("", a) for a in args],
        ),
    )


# ── Environment sanitization ──────────────────────────────────────────────


def server_type_key(server_label: str) -> str:
    """Coarse server type derived from a display label, e.g. ``"GitHub (work)"``."""
    return _NON_TYPE_CHARACTERS.sub("-", server_label.lower())


def sanitize_environment(
    server_label: str,
    supplied_env: Optional[Dict[str, str]],
    platform: Optional[str] = None,
) -> Dict[str, str]:
    """
    Build the environment for a tool-server subprocess.

    Only variables permitted for the server type are copied from
    ``supplied_env``, with control characters removed. A minimal ``PATH`` and
    ``NODE_ENV`` are added; nothing is inherited from ``os.environ`` except,
    on Windows, the host ``PATH`` needed to locate the Node.js runner.
    """
    supplied_env = supplied_env or {}
    server_type = server_type_key(server_label)

    allowed: List[str] = []
    for key, names in ALLOWED_ENV_VARS.items():
        if key in server_type:
            allowed = names
            break

    safe_env: Dict[str, str] = {}
    for name in allowed:
        value = supplied_env.get(name)
        if value:
            safe_env[name] = _CONTROL_CHARACTERS.sub("", value)

    safe_env["NODE_ENV"] = "production"
    safe_env["PATH"] = _safe_path(platform or sys.platform)

    dropped = sorted(k for k in supplied_env if k not in safe_env)
    log_security_event(
        "ENVIRONMENT_SANITIZED",
        server_type=server_type,
        kept=sorted(k for k in allowed if k in safe_env),
        dropped=dropped,
    )
    return safe_env


def _safe_path(platform: str) -> str:
    if platform == "win32":
        app_data = os.environ.get("APPDATA", "")
        program_files = os.environ.get("ProgramFiles", "C:\\Program Files")
        return f"{program_files}\\nodejs;{app_data}\\npm;{os.environ.get('PATH', '')}"
    return POSIX_SAFE_PATH


def resolve_executable(command: str, platform: Optional[str] = None) -> str:
    """Windows ships the runner as a ``.cmd`` shim."""
    if (platform or sys.platform) == "win32" and command == "npx":
        return "npx.cmd"
    return command
