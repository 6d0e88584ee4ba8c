"""Command execution utilities for external tools (gpg, udisksctl, losetup, lsblk)."""

from __future__ import annotations

import json
import shutil
import subprocess
from typing import Any, Iterable, Optional, Sequence

from rpi_autoinstall.exceptions import CommandError, ConfigError
from rpi_autoinstall.logging import LoggerFactory


log = LoggerFactory.for_system()


def run_command(command: Sequence[str], check: bool = True, input_text: Optional[str] = None):
    """Run a command, logging it and its output.

    Raises:
        CommandError: If ``check`` is set and the command exits non-zero
    """
    command = [str(part) for part in command]
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
    )
    output_log = log.bind(tags=["command-output"])
    if result.stdout:
        output_log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        output_log.trace(f"stderr: {result.stderr.strip()}")
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        stdout = (result.stdout or "").strip()
        raise CommandError(command, result.returncode, stderr or stdout)
    return result


def run_checked_command(command: Sequence[str], input_text: Optional[str] = None) -> str:
    """Run a command and return its stdout, raising CommandError if it fails."""
    return run_command(command, check=True, input_text=input_text).stdout


def run_json_command(command: Sequence[str]) -> Any:
    """Run a tool with JSON output and return the decoded document."""
    output = run_checked_command(command)
    if not output.strip():
        return {}
    try:
        return json.loads(output)
    except json.JSONDecodeError as error:
        raise CommandError(command, 0, f"invalid JSON output: {error}") from error


def require_tools(tools: Iterable[str]) -> None:
    """Fail early when an external tool is not installed.

    Raises:
        ConfigError: Naming the first missing tool
    """
    for tool in tools:
        if shutil.which(tool) is None:
            raise ConfigError(f"{tool} is not installed or not on PATH")
    log.debug("All required utilities are installed")


__all__ = [
    "run_command",
    "run_checked_command",
    "run_json_command",
    "require_tools",
]
