"""Ralphloop controller — the per-working-copy iteration state machine.

One controller drives one working copy. Every iteration reloads the persisted
state (so an external ``ralph cancel`` wins), invokes the agent through an
executor, classifies failures as recoverable (timeout, rate limit, validation)
or fatal, and stops on max iterations, idle completion, cancellation, a fatal
error, or the consecutive-error circuit breaker.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any, Callable

from ralphloop.constants import (
    AGENT_RATE_LIMIT_PREFIX,
    AGENT_TIMEOUT_PREFIX,
    GIT_PUSH_FAILED_PREFIX,
    OUTCOME_CANCELLED,
    OUTCOME_COMPLETION,
    OUTCOME_FATAL,
    OUTCOME_MAX_ITERATIONS,
    PREVIOUS_RATE_LIMIT_MARKERS,
    PROMPT_FILES,
    RATE_LIMIT_BACKOFF_CAP_SECONDS,
    RATE_LIMIT_BACKOFF_TABLE,
    RATE_LIMIT_FIRST_BACKOFF_SECONDS,
    VALIDATION_ERROR_PREFIX,
)
from ralphloop.detection import CompletionDetector, _get_commit_fingerprint
from ralphloop.git_ops import _git_push
from ralphloop.models import (
    AgentError,
    GitError,
    LoopConfig,
    LoopError,
    LoopOutcome,
    NotificationDetails,
    SandboxError,
    StateError,
)
from ralphloop.notifications import Notifier
from ralphloop.runners import (
    ERROR_KIND_FATAL,
    ERROR_KIND_RATE_LIMIT,
    ERROR_KIND_TIMEOUT,
    Executor,
    _build_executor,
    _classify_agent_error,
)
from ralphloop.state import (
    _load_or_create_state,
    _load_state,
    _prepare_state,
    _save_state,
)
from ralphloop.utils import _append_log, _compact_log_text, _format_event, _utc_now
from ralphloop.validation import _run_validation_command

_FATAL_ERRORS = (LoopError, StateError, SandboxError, AgentError, GitError, OSError)


# ---------------------------------------------------------------------------
# Pure policy helpers
# ---------------------------------------------------------------------------


def _rate_limit_backoff_seconds(consecutive_errors: int, previous_was_rate_limit: bool) -> int:
    if not previous_was_rate_limit:
        return RATE_LIMIT_FIRST_BACKOFF_SECONDS
    for limit, seconds in RATE_LIMIT_BACKOFF_TABLE:
        if consecutive_errors <= limit:
            return seconds
    return RATE_LIMIT_BACKOFF_CAP_SECONDS


def _is_rate_limit_error(last_error: str | None) -> bool:
    if not last_error:
        return False
    return any(marker in last_error for marker in PREVIOUS_RATE_LIMIT_MARKERS)


def _is_validation_error(last_error: str | None) -> bool:
    return bool(last_error) and str(last_error).startswith(VALIDATION_ERROR_PREFIX)


def _circuit_breaker_tripped(consecutive_errors: int, max_consecutive_errors: int) -> bool:
    return max_consecutive_errors > 0 and consecutive_errors >= max_consecutive_errors


def _is_max_iterations_reached(state: dict[str, Any]) -> bool:
    limit = state.get("max_iterations")
    return limit is not None and int(state["iteration"]) > int(limit)


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


def _resolve_prompt_file(repo_root: Path, mode: str, prompt_file: str | Path | None = None) -> Path:
    if prompt_file:
        candidate = Path(prompt_file).expanduser()
        return candidate if candidate.is_absolute() else repo_root / candidate
    return repo_root / PROMPT_FILES[mode]


def _validation_error_block(last_error: str) -> str:
    details = last_error[len(VALIDATION_ERROR_PREFIX):].strip()
    return (
        "\n\n## VALIDATION ERROR FROM PREVIOUS ITERATION\n"
        "The following validation error occurred. Please fix it:\n\n"
        f"```\n{details}\n```\n\n"
        "Fix the issues above and ensure validation passes before proceeding.\n"
    )


def _build_prompt(base_prompt: str, last_error: str | None, extra_context: str | None = None) -> str:
    prompt = base_prompt
    if extra_context:
        prompt = f"{prompt.rstrip()}\n\n{extra_context.strip()}\n"
    if _is_validation_error(last_error):
        prompt += _validation_error_block(str(last_error))
    return prompt


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class LoopController:
    def __init__(
        self,
        repo_root: Path,
        config: LoopConfig,
        *,
        executor: Executor,
        prompt_file: Path,
        extra_context: str | None = None,
        notifier: Any = None,
        validator: Callable[[Path, str], tuple[bool, str]] | None = None,
        fingerprint: Callable[[Path], str | None] = _get_commit_fingerprint,
        pusher: Callable[[Path, tuple[str, ...]], tuple[bool, str]] = _git_push,
        sleep: Callable[[float], None] = time.sleep,
        label: str | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.config = config
        self.executor = executor
        self.prompt_file = prompt_file
        self.extra_context = extra_context
        self.notifier = notifier
        self.validator = validator or self._default_validator
        self.fingerprint = fingerprint
        self.pusher = pusher
        self.sleep = sleep
        self.label = label
        self.invocations = 0

    # -- output ---------------------------------------------------------

    def _prefix(self) -> str:
        return f"ralph loop [{self.label}]" if self.label else "ralph loop"

    def _say(self, message: str, *, error: bool = False) -> None:
        if error:
            print(f"{self._prefix()}: ERROR {message}", file=sys.stderr)
        elif self.config.monitoring.show_progress:
            print(f"{self._prefix()}: {message}")

    def _log(self, message: str) -> None:
        _append_log(self.repo_root, message, log_file=self.config.monitoring.log_file)

    def _notify(self, event: str, state: dict[str, Any], message: str) -> None:
        if self.notifier is None:
            return
        self.notifier.notify(
            event,
            NotificationDetails(
                iteration=int(state["iteration"]),
                message=message,
                timestamp=_utc_now(),
                context=self.label,
            ),
        )

    def _default_validator(self, repo_root: Path, command: str) -> tuple[bool, str]:
        return _run_validation_command(
            repo_root,
            command,
            timeout_seconds=self.config.timeout_seconds(),
            log_file=self.config.monitoring.log_file,
        )

    # -- persistence ----------------------------------------------------

    def _externally_cancelled(self) -> bool:
        persisted = _load_state(self.repo_root)
        return persisted is None or not persisted.get("active")

    def _persist(self, state: dict[str, Any]) -> None:
        if self._externally_cancelled():
            state["active"] = False
        _save_state(self.repo_root, state)

    def _teardown(self) -> None:
        try:
            self.executor.close()
        except Exception as exc:
            self._log(f"executor teardown failed: {exc}")

    def _finish(self, state: dict[str, Any], reason: str, message: str) -> LoopOutcome:
        state["active"] = False
        self._teardown()
        _save_state(self.repo_root, state)
        self._log(
            _format_event(
                "loop_end",
                reason=reason,
                iteration=state["iteration"],
                error_count=state["error_count"],
                message=_compact_log_text(message, limit=200),
            )
        )
        if reason == OUTCOME_FATAL:
            self._say(message, error=True)
            self._notify("error", state, message)
        else:
            self._say(message)
            self._notify("complete", state, message)
        return LoopOutcome(
            reason=reason,
            final_iteration=int(state["iteration"]),
            error_count=int(state["error_count"]),
            message=message,
            invocations=self.invocations,
        )

    # -- error paths ----------------------------------------------------

    def _record_error(self, state: dict[str, Any], message: str, *, kind: str) -> LoopOutcome | None:
        if kind == ERROR_KIND_RATE_LIMIT:
            delay = _rate_limit_backoff_seconds(
                int(state["consecutive_errors"]),
                _is_rate_limit_error(state.get("last_error")),
            )
            self._say(f"rate limited; backing off {delay}s")
            self._log(_format_event("backoff", iteration=state["iteration"], seconds=delay))
            self.sleep(delay)

        state["error_count"] = int(state["error_count"]) + 1
        state["consecutive_errors"] = int(state["consecutive_errors"]) + 1
        state["last_error"] = message
        state["last_iteration_at"] = _utc_now()
        self._log(
            _format_event(
                "error",
                kind=kind,
                iteration=state["iteration"],
                consecutive_errors=state["consecutive_errors"],
                detail=_compact_log_text(message, limit=400),
            )
        )
        self._say(f"iteration {state['iteration']} failed ({kind}): {_compact_log_text(message, limit=160)}")
        state["iteration"] = int(state["iteration"]) + 1
        self._persist(state)
        self._notify("error", state, message)

        if not state["active"]:
            return self._finish(
                state, OUTCOME_CANCELLED, f"Loop cancelled at iteration {state['iteration']}"
            )
        limit = self.config.monitoring.max_consecutive_errors
        if _circuit_breaker_tripped(int(state["consecutive_errors"]), limit):
            return self._finish(
                state,
                OUTCOME_FATAL,
                f"Circuit breaker triggered: {state['consecutive_errors']} consecutive errors (limit: {limit})",
            )
        return None

    def _run_post_iteration(self, state: dict[str, Any]) -> None:
        if not self.config.git.auto_push:
            return
        ok, detail = self.pusher(self.repo_root, self.config.git.protected_branches)
        if ok:
            self._log(f"git push ok: {detail}")
            return
        state["error_count"] = int(state["error_count"]) + 1
        state["last_error"] = f"{GIT_PUSH_FAILED_PREFIX}{detail}"
        self._log(_format_event("error", kind="push", iteration=state["iteration"], detail=detail))
        self._say(f"git push failed: {_compact_log_text(detail, limit=160)}", error=True)
        self._notify("error", state, state["last_error"])

    # -- main loop ------------------------------------------------------

    def _iterate(self, state: dict[str, Any], detector: CompletionDetector) -> LoopOutcome | None:
        if self._externally_cancelled():
            return self._finish(
                state, OUTCOME_CANCELLED, f"Loop cancelled at iteration {state['iteration']}"
            )
        if _is_max_iterations_reached(state):
            return self._finish(
                state,
                OUTCOME_MAX_ITERATIONS,
                f"Max iterations reached ({state['max_iterations']})",
            )

        iteration = int(state["iteration"])
        self._say(f"iteration {iteration} ({state['mode']})")
        self._log(_format_event("iteration_start", iteration=iteration, mode=state["mode"]))
        detector.record_commit(self.fingerprint(self.repo_root))

        try:
            base_prompt = self.prompt_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise LoopError(f"prompt file could not be read: {self.prompt_file}: {exc}") from exc
        prompt = _build_prompt(base_prompt, state.get("last_error"), self.extra_context)

        self.invocations += 1
        try:
            self.executor.execute(self.repo_root, prompt)
        except Exception as exc:
            kind = _classify_agent_error(exc)
            if kind == ERROR_KIND_FATAL:
                raise LoopError(f"Agent failed: {exc}") from exc
            prefix = AGENT_TIMEOUT_PREFIX if kind == ERROR_KIND_TIMEOUT else AGENT_RATE_LIMIT_PREFIX
            return self._record_error(state, f"{prefix}{exc}", kind=kind)

        validation = self.config.validation
        if validation.enabled:
            ok, error_text = self.validator(self.repo_root, validation.command)
            if not ok:
                return self._record_error(
                    state, f"{VALIDATION_ERROR_PREFIX}{error_text}", kind="validation"
                )
            if _is_validation_error(state.get("last_error")):
                state["last_error"] = None

        state["consecutive_errors"] = 0
        state["last_iteration_at"] = _utc_now()
        self._persist(state)
        if not state["active"]:
            return self._finish(
                state, OUTCOME_CANCELLED, f"Loop cancelled at iteration {iteration}"
            )

        completed = detector.check_completion(self.fingerprint(self.repo_root))
        state["last_commit"] = detector.last_commit
        state["idle_iterations"] = detector.idle_count
        self._log(
            _format_event(
                "iteration_complete",
                iteration=iteration,
                idle_iterations=detector.idle_count,
                commit=detector.last_commit,
            )
        )
        if completed:
            return self._finish(
                state,
                OUTCOME_COMPLETION,
                f"Completion detected: no new commits for {detector.idle_count} iterations",
            )

        self._run_post_iteration(state)
        state["iteration"] = iteration + 1
        self._persist(state)
        return None

    def run(self, initial_state: dict[str, Any]) -> LoopOutcome:
        state = dict(initial_state)
        state["active"] = True
        _save_state(self.repo_root, state)
        detector = CompletionDetector.from_state(
            self.config.completion.idle_threshold,
            state.get("last_commit"),
            int(state.get("idle_iterations", 0)),
        )
        self._log(
            _format_event(
                "loop_start",
                mode=state["mode"],
                iteration=state["iteration"],
                max_iterations=state.get("max_iterations"),
                provider=self.config.agent.provider,
                label=self.label,
            )
        )
        try:
            self.executor.prepare(self.repo_root)
            while True:
                outcome = self._iterate(state, detector)
                if outcome is not None:
                    return outcome
        except _FATAL_ERRORS as exc:
            return self._finish(state, OUTCOME_FATAL, str(exc))
        finally:
            if state.get("active"):
                # Unexpected exception: leave the audit record inactive.
                state["active"] = False
                self._teardown()
                _save_state(self.repo_root, state)


def run_loop(
    repo_root: Path,
    config: LoopConfig,
    *,
    mode: str,
    max_iterations: int | None = None,
    prompt_file: str | Path | None = None,
    no_sandbox: bool = False,
    extra_context: str | None = None,
    label: str | None = None,
    executor: Executor | None = None,
) -> LoopOutcome:
    state = _prepare_state(_load_or_create_state(repo_root, mode), max_iterations)
    prompt_path = _resolve_prompt_file(repo_root, str(state["mode"]), prompt_file)
    if not prompt_path.is_file():
        raise LoopError(f"prompt file not found: {prompt_path}")
    if executor is None:
        executor = _build_executor(repo_root, config, no_sandbox=no_sandbox)
    controller = LoopController(
        repo_root,
        config,
        executor=executor,
        prompt_file=prompt_path,
        extra_context=extra_context,
        notifier=Notifier(
            config.monitoring.notifications,
            repo_root=repo_root,
            log_file=config.monitoring.log_file,
        ),
        label=label,
    )
    return controller.run(state)
