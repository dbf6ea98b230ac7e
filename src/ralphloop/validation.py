"""Ralphloop validation — runs the configured check command after each agent pass."""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

from ralphloop.constants import DEFAULT_LOG_FILE
from ralphloop.utils import _append_log, _compact_log_text


def _run_validation_command(
    repo_root: Path,
    command: str,
    *,
    timeout_seconds: float | None = None,
    log_file: str = DEFAULT_LOG_FILE,
) -> tuple[bool, str]:
    """Run ``command`` in ``repo_root``; return ``(ok, full_error_text)``."""
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        return (False, f"Validation failed ({command}):\ncommand could not be parsed: {exc}")
    if not argv:
        return (False, "Validation failed (<empty>):\nvalidation command is empty")

    try:
        proc = subprocess.run(
            argv,
            cwd=repo_root,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_seconds,
        )
    except FileNotFoundError as exc:
        return (False, f"Validation failed ({command}):\n{exc}")
    except subprocess.TimeoutExpired:
        return (False, f"Validation failed ({command}):\ntimed out after {int(timeout_seconds or 0)} seconds")
    except OSError as exc:
        return (False, f"Validation failed ({command}):\n{exc}")

    if proc.returncode == 0:
        _append_log(repo_root, f"validation passed command={command}", log_file=log_file)
        return (True, "")
    details = proc.stderr if proc.stderr.strip() else proc.stdout
    _append_log(
        repo_root,
        f"validation failed command={command} exit={proc.returncode} detail={_compact_log_text(details)}",
        log_file=log_file,
    )
    return (False, f"Validation failed ({command}):\n{details}")
