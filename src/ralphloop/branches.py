"""Ralphloop branch builds — plan parsing and per-branch worktree loops."""

from __future__ import annotations

import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable

from ralphloop.constants import (
    BRANCH_BASE_PATTERN,
    BRANCH_GOAL_PATTERN,
    BRANCH_HEADER_PATTERN,
    IMPLEMENTATION_PLAN_FILE,
    INCOMPLETE_TASK_PATTERN,
)
from ralphloop.git_ops import (
    _configure_worktree_identity,
    _copy_shared_files,
    _create_pull_request,
    _create_worktree,
    _enable_worktree_config,
    _identity_settings,
    _validate_branch_name,
)
from ralphloop.loop import run_loop
from ralphloop.models import BranchResult, BranchSection, GitError, LoopConfig, LoopError
from ralphloop.utils import _append_log, _compact_log_text


# ---------------------------------------------------------------------------
# Plan parsing
# ---------------------------------------------------------------------------


def _split_branch_bodies(text: str) -> list[tuple[str, str]]:
    """Return ``(branch_name, body)`` pairs for every ``## Branch:`` header."""
    sections: list[tuple[str, str]] = []
    current_name: str | None = None
    body: list[str] = []
    for line in text.splitlines():
        header = BRANCH_HEADER_PATTERN.match(line)
        if header:
            if current_name is not None:
                sections.append((current_name, "\n".join(body)))
            current_name = header.group("name")
            body = []
            continue
        if current_name is not None and line.startswith("## "):
            sections.append((current_name, "\n".join(body)))
            current_name = None
            body = []
            continue
        if current_name is not None:
            body.append(line)
    if current_name is not None:
        sections.append((current_name, "\n".join(body)))
    return sections


def _section_from_body(name: str, body: str) -> BranchSection | None:
    goal = ""
    base = ""
    for line in body.splitlines():
        stripped = line.strip()
        goal_match = BRANCH_GOAL_PATTERN.match(stripped)
        if goal_match and not goal:
            goal = goal_match.group("value")
            continue
        base_match = BRANCH_BASE_PATTERN.match(stripped)
        if base_match and not base:
            base = base_match.group("value")
    if not name or not goal or not base:
        return None
    return BranchSection(name=name, goal=goal, base=base)


def _parse_implementation_plan(text: str) -> list[BranchSection]:
    sections: list[BranchSection] = []
    for name, body in _split_branch_bodies(text):
        section = _section_from_body(name, body)
        if section is not None:
            sections.append(section)
    return sections


def _filter_incomplete_branches(text: str) -> list[BranchSection]:
    sections: list[BranchSection] = []
    for name, body in _split_branch_bodies(text):
        if not INCOMPLETE_TASK_PATTERN.search(body):
            continue
        section = _section_from_body(name, body)
        if section is not None:
            sections.append(section)
    return sections


def _branch_context(section: BranchSection) -> str:
    return (
        "## Branch Context\n"
        f"You are working on branch `{section.name}` (based on `{section.base}`).\n"
        f"Goal: {section.goal}\n"
        f"Only work on tasks listed under `## Branch: {section.name}` in {IMPLEMENTATION_PLAN_FILE}."
    )


# ---------------------------------------------------------------------------
# Worktree provisioning
# ---------------------------------------------------------------------------


def _provision_worktree(repo_root: Path, section: BranchSection, config: LoopConfig) -> Path:
    _validate_branch_name(section.name)
    worktree = _create_worktree(
        repo_root,
        section.name,
        section.base,
        log_file=config.monitoring.log_file,
    )
    _configure_worktree_identity(worktree, config.worktree)
    _copy_shared_files(repo_root, worktree)
    return worktree


def _provision_all(
    repo_root: Path,
    config: LoopConfig,
    sections: list[BranchSection],
    provisioner: Callable[[Path, BranchSection, LoopConfig], Path],
) -> list[Path | BranchResult]:
    """Create every worktree one at a time, before any loop starts.

    Worktree creation and config writes touch the shared ``.git`` directory
    and stay off the branch worker threads. A provisioning failure becomes
    that branch's failed result.
    """
    log_file = config.monitoring.log_file
    if _identity_settings(config.worktree):
        try:
            _enable_worktree_config(repo_root)
        except GitError as exc:
            raise LoopError(str(exc)) from exc

    provisioned: list[Path | BranchResult] = []
    for section in sections:
        try:
            provisioned.append(provisioner(repo_root, section, config))
        except (RuntimeError, OSError) as exc:
            _append_log(repo_root, f"branch provision failed branch={section.name}: {exc}", log_file=log_file)
            provisioned.append(BranchResult(branch=section.name, success=False, iterations=0, error=str(exc)))
    return provisioned


# ---------------------------------------------------------------------------
# Per-branch build
# ---------------------------------------------------------------------------


def _build_branch(
    repo_root: Path,
    config: LoopConfig,
    section: BranchSection,
    worktree: Path,
    *,
    max_iterations: int | None = None,
    no_sandbox: bool = False,
    create_pr: bool = False,
    runner: Callable[..., Any] = run_loop,
) -> BranchResult:
    log_file = config.monitoring.log_file
    try:
        outcome = runner(
            worktree,
            config,
            mode="build",
            max_iterations=max_iterations,
            no_sandbox=no_sandbox,
            extra_context=_branch_context(section),
            label=section.name,
        )
    except (RuntimeError, OSError) as exc:
        _append_log(repo_root, f"branch build failed branch={section.name}: {exc}", log_file=log_file)
        return BranchResult(branch=section.name, success=False, iterations=0, error=str(exc))

    if outcome.exit_code != 0:
        _append_log(
            repo_root,
            f"branch build failed branch={section.name} reason={outcome.reason}",
            log_file=log_file,
        )
        return BranchResult(
            branch=section.name,
            success=False,
            iterations=outcome.invocations,
            error=outcome.message,
        )

    pr_url: str | None = None
    if create_pr:
        try:
            pr_url = _create_pull_request(
                worktree,
                section.name,
                base=section.base,
                title=f"{section.name}: {section.goal}",
                body=f"Goal: {section.goal}\n\nBuilt by ralph loop in {outcome.invocations} iteration(s).",
            )
        except GitError as exc:
            _append_log(repo_root, f"pull request skipped branch={section.name}: {exc}", log_file=log_file)
            print(f"ralph build-branches: WARNING PR creation failed for {section.name}: {exc}", file=sys.stderr)
    _append_log(
        repo_root,
        f"branch build complete branch={section.name} reason={outcome.reason} iterations={outcome.invocations}",
        log_file=log_file,
    )
    return BranchResult(
        branch=section.name,
        success=True,
        iterations=outcome.invocations,
        pr_url=pr_url,
    )


_BranchJob = tuple[BranchSection, Path]


def _run_sequential(
    build: Callable[[BranchSection, Path], BranchResult],
    jobs: list[_BranchJob],
) -> list[BranchResult]:
    results: list[BranchResult] = []
    for section, worktree in jobs:
        try:
            results.append(build(section, worktree))
        except Exception as exc:
            results.append(BranchResult(branch=section.name, success=False, iterations=0, error=str(exc)))
    return results


def _run_parallel(
    build: Callable[[BranchSection, Path], BranchResult],
    jobs: list[_BranchJob],
) -> list[BranchResult]:
    results: list[BranchResult | None] = [None] * len(jobs)
    with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
        futures = {pool.submit(build, section, worktree): index for index, (section, worktree) in enumerate(jobs)}
        for future in as_completed(futures):
            index = futures[future]
            section = jobs[index][0]
            try:
                results[index] = future.result()
            except Exception as exc:
                results[index] = BranchResult(
                    branch=section.name, success=False, iterations=0, error=f"task failed: {exc}"
                )
    return [result for result in results if result is not None]


def build_branches(
    repo_root: Path,
    config: LoopConfig,
    *,
    parallel: bool = False,
    plan_file: str | Path | None = None,
    max_iterations: int | None = None,
    no_sandbox: bool = False,
    create_pr: bool | None = None,
    runner: Callable[..., Any] = run_loop,
    provisioner: Callable[[Path, BranchSection, LoopConfig], Path] = _provision_worktree,
) -> list[BranchResult]:
    plan_path = Path(plan_file) if plan_file else repo_root / IMPLEMENTATION_PLAN_FILE
    if not plan_path.is_absolute():
        plan_path = repo_root / plan_path
    try:
        text = plan_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LoopError(f"implementation plan could not be read: {plan_path}: {exc}") from exc

    sections = _filter_incomplete_branches(text)
    _append_log(
        repo_root,
        f"branch build start branches={len(sections)} parallel={str(parallel).lower()}",
        log_file=config.monitoring.log_file,
    )
    if not sections:
        return []
    should_create_pr = config.worktree.create_pr if create_pr is None else create_pr

    provisioned = _provision_all(repo_root, config, sections, provisioner)
    jobs = [
        (section, target)
        for section, target in zip(sections, provisioned)
        if not isinstance(target, BranchResult)
    ]

    def build(section: BranchSection, worktree: Path) -> BranchResult:
        return _build_branch(
            repo_root,
            config,
            section,
            worktree,
            max_iterations=max_iterations,
            no_sandbox=no_sandbox,
            create_pr=should_create_pr,
            runner=runner,
        )

    built = iter(_run_parallel(build, jobs) if parallel and jobs else _run_sequential(build, jobs))
    return [target if isinstance(target, BranchResult) else next(built) for target in provisioned]


def _summarize_results(results: list[BranchResult]) -> tuple[int, int]:
    succeeded = sum(1 for result in results if result.success)
    return (succeeded, len(results) - succeeded)


def _format_result_line(result: BranchResult) -> str:
    status = "ok" if result.success else "FAILED"
    line = f"  {result.branch}: {status} iterations={result.iterations}"
    if result.pr_url:
        line += f" pr={result.pr_url}"
    if result.error:
        line += f" error={_compact_log_text(result.error, limit=120)}"
    return line
