"""Ralphloop state — persistence, normalisation, and cancellation of the loop record."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from ralphloop.constants import MODES, PACKAGE_SCHEMA_DIR, STATE_FILE_RELATIVE
from ralphloop.models import StateError
from ralphloop.utils import _read_json, _utc_now, _write_json

_OPTIONAL_DEFAULTS: dict[str, Any] = {
    "max_iterations": None,
    "last_iteration_at": None,
    "error_count": 0,
    "consecutive_errors": 0,
    "last_error": None,
    "last_commit": None,
    "idle_iterations": 0,
}


def _state_path(repo_root: Path) -> Path:
    return repo_root / STATE_FILE_RELATIVE


@lru_cache(maxsize=1)
def _state_validator() -> Draft202012Validator:
    schema_path = PACKAGE_SCHEMA_DIR / "state.schema.json"
    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise StateError(f"state schema could not be loaded: {schema_path}: {exc}") from exc
    return Draft202012Validator(schema)


def _format_error_path(path: Any) -> str:
    parts = [str(part) for part in path]
    return ".".join(parts) if parts else "<root>"


# ---------------------------------------------------------------------------
# State construction / normalisation
# ---------------------------------------------------------------------------


def _default_state(mode: str) -> dict[str, Any]:
    if mode not in MODES:
        raise StateError(f"mode must be one of {list(MODES)}, got '{mode}'")
    return {
        "active": False,
        "mode": mode,
        "iteration": 1,
        "max_iterations": None,
        "started_at": _utc_now(),
        "last_iteration_at": None,
        "error_count": 0,
        "consecutive_errors": 0,
        "last_error": None,
        "last_commit": None,
        "idle_iterations": 0,
    }


def _normalize_state(state: dict[str, Any]) -> dict[str, Any]:
    normalized = dict(state)
    for key, default in _OPTIONAL_DEFAULTS.items():
        normalized.setdefault(key, default)

    violations = [
        f"schema violation at {_format_error_path(error.path)}: {error.message}"
        for error in sorted(
            _state_validator().iter_errors(normalized),
            key=lambda item: _format_error_path(item.path),
        )
    ]
    if violations:
        raise StateError("; ".join(violations))

    if normalized["consecutive_errors"] > normalized["error_count"]:
        raise StateError(
            "state.consecutive_errors must not exceed state.error_count "
            f"({normalized['consecutive_errors']} > {normalized['error_count']})"
        )
    return normalized


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def _load_state(repo_root: Path) -> dict[str, Any] | None:
    path = _state_path(repo_root)
    if not path.exists():
        return None
    return _normalize_state(_read_json(path))


def _save_state(repo_root: Path, state: dict[str, Any]) -> None:
    _write_json(_state_path(repo_root), _normalize_state(state))


def _load_or_create_state(repo_root: Path, mode: str) -> dict[str, Any]:
    """Resume an active persisted loop, or start a fresh record in ``mode``."""
    existing = _load_state(repo_root)
    if existing is not None and existing.get("active"):
        return existing
    return _default_state(mode)


def _prepare_state(state: dict[str, Any], max_iterations: int | None) -> dict[str, Any]:
    prepared = dict(state)
    if max_iterations is not None:
        prepared["max_iterations"] = max_iterations
    prepared["active"] = True
    return prepared


def _cancel_state(state: dict[str, Any] | None) -> tuple[bool, dict[str, Any] | None]:
    if state is None or not state.get("active"):
        return (False, state)
    cancelled = dict(state)
    cancelled["active"] = False
    return (True, cancelled)


def _cancel_loop(repo_root: Path) -> tuple[bool, str]:
    state = _load_state(repo_root)
    cancelled, updated = _cancel_state(state)
    if not cancelled or updated is None:
        return (False, "No active loop found")
    _save_state(repo_root, updated)
    return (True, f"cancelled (was at iteration {updated['iteration']})")


def _remove_state(repo_root: Path) -> bool:
    path = _state_path(repo_root)
    if not path.exists():
        return False
    path.unlink()
    return True
