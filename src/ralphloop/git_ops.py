"""Ralphloop git plumbing — push, worktrees, pull requests, and history helpers."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from ralphloop.constants import (
    BRANCH_NAME_SAFE_PATTERN,
    DEFAULT_LOG_FILE,
    IMPLEMENTATION_PLAN_FILE,
    PROMPT_FILES,
    WORKTREES_DIR,
)
from ralphloop.models import GitError, WorktreeConfig
from ralphloop.utils import _append_log, _git_error_text, _run_git


def _current_branch(repo_root: Path) -> str:
    proc = _run_git(repo_root, ["rev-parse", "--abbrev-ref", "HEAD"])
    if proc.returncode != 0:
        raise GitError(f"could not determine current branch: {_git_error_text(proc)}")
    return proc.stdout.strip()


def _git_push(repo_root: Path, protected_branches: tuple[str, ...]) -> tuple[bool, str]:
    try:
        branch = _current_branch(repo_root)
    except GitError as exc:
        return (False, str(exc))
    if branch in protected_branches:
        return (False, f"refusing to push protected branch '{branch}'")

    proc = _run_git(repo_root, ["push"])
    if proc.returncode == 0:
        return (True, f"pushed {branch}")
    upstream = _run_git(repo_root, ["push", "-u", "origin", branch])
    if upstream.returncode == 0:
        return (True, f"pushed {branch} (set upstream)")
    return (False, _git_error_text(upstream))


def _recent_commits(repo_root: Path, count: int = 5) -> list[str]:
    proc = _run_git(repo_root, ["log", "--oneline", "-n", str(count)])
    if proc.returncode != 0:
        return []
    return [line for line in proc.stdout.splitlines() if line.strip()]


def _revert_commits(repo_root: Path, count: int, *, log_file: str = DEFAULT_LOG_FILE) -> list[str]:
    """Hard-reset the last ``count`` commits; return the discarded log lines."""
    if count <= 0:
        raise GitError("count must be greater than 0")
    commits = _recent_commits(repo_root, count)
    if not commits:
        raise GitError("failed to read git log")
    proc = _run_git(repo_root, ["reset", "--hard", f"HEAD~{count}"])
    if proc.returncode != 0:
        raise GitError(f"git reset failed: {_git_error_text(proc)}")
    _append_log(repo_root, f"reverted commits count={count}", log_file=log_file)
    return commits


# ---------------------------------------------------------------------------
# Worktrees
# ---------------------------------------------------------------------------


def _validate_branch_name(name: str) -> None:
    if not BRANCH_NAME_SAFE_PATTERN.match(name) or ".." in name or name.startswith(("-", "/")):
        raise GitError(f"invalid branch name: '{name}'")


def _worktree_path(repo_root: Path, branch: str) -> Path:
    return repo_root / WORKTREES_DIR / branch


def _branch_exists(repo_root: Path, branch: str) -> bool:
    proc = _run_git(repo_root, ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"])
    return proc.returncode == 0


def _create_worktree(
    repo_root: Path,
    branch: str,
    base: str | None = None,
    *,
    log_file: str = DEFAULT_LOG_FILE,
) -> Path:
    _validate_branch_name(branch)
    path = _worktree_path(repo_root, branch)
    if path.exists():
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    relative = f"{WORKTREES_DIR}/{branch}"
    if _branch_exists(repo_root, branch):
        args = ["worktree", "add", relative, branch]
    else:
        args = ["worktree", "add", relative, "-b", branch]
        if base:
            args.append(base)
    proc = _run_git(repo_root, args)
    if proc.returncode != 0:
        raise GitError(f"failed to create worktree for '{branch}': {_git_error_text(proc)}")
    _append_log(repo_root, f"worktree created branch={branch} path={path}", log_file=log_file)
    return path


def _remove_worktree(repo_root: Path, branch: str, *, log_file: str = DEFAULT_LOG_FILE) -> None:
    relative = f"{WORKTREES_DIR}/{branch}"
    proc = _run_git(repo_root, ["worktree", "remove", "--force", relative])
    if proc.returncode != 0:
        raise GitError(f"failed to remove worktree '{branch}': {_git_error_text(proc)}")
    _append_log(repo_root, f"worktree removed branch={branch}", log_file=log_file)


def _list_worktree_branches(repo_root: Path) -> list[str]:
    proc = _run_git(repo_root, ["worktree", "list", "--porcelain"])
    if proc.returncode != 0:
        return []
    root = (repo_root / WORKTREES_DIR).resolve()
    branches: list[str] = []
    for line in proc.stdout.splitlines():
        if not line.startswith("worktree "):
            continue
        path = Path(line[len("worktree "):].strip()).resolve()
        try:
            relative = path.relative_to(root)
        except ValueError:
            continue
        branches.append(relative.as_posix())
    return branches


def _remove_all_worktrees(repo_root: Path, *, log_file: str = DEFAULT_LOG_FILE) -> list[str]:
    removed: list[str] = []
    for branch in _list_worktree_branches(repo_root):
        try:
            _remove_worktree(repo_root, branch, log_file=log_file)
        except GitError as exc:
            _append_log(repo_root, f"worktree cleanup skipped branch={branch}: {exc}", log_file=log_file)
            continue
        removed.append(branch)
    _run_git(repo_root, ["worktree", "prune"])
    worktrees_dir = repo_root / WORKTREES_DIR
    if worktrees_dir.is_dir() and not any(worktrees_dir.iterdir()):
        worktrees_dir.rmdir()
    return removed


def _identity_settings(identity: WorktreeConfig) -> list[tuple[str, str]]:
    settings: list[tuple[str, str]] = []
    if identity.name:
        settings.append(("user.name", identity.name))
    if identity.email:
        settings.append(("user.email", identity.email))
    if identity.signing_key:
        settings.append(("user.signingkey", identity.signing_key))
        settings.append(("commit.gpgsign", "true"))
    if identity.ssh_key:
        key_path = Path(identity.ssh_key).expanduser()
        settings.append(("core.sshCommand", f"ssh -i {key_path} -o IdentitiesOnly=yes"))
    return settings


def _enable_worktree_config(repo_root: Path) -> None:
    """Turn on ``extensions.worktreeConfig`` in the shared repository config.

    This writes ``.git/config`` and must not run concurrently with other
    config writers; call it once before provisioning worktrees.
    """
    proc = _run_git(repo_root, ["config", "extensions.worktreeConfig", "true"])
    if proc.returncode != 0:
        raise GitError(f"failed to enable worktree config: {_git_error_text(proc)}")


def _configure_worktree_identity(worktree: Path, identity: WorktreeConfig) -> None:
    """Write identity settings to the worktree's own ``config.worktree``.

    Requires ``_enable_worktree_config`` to have run on the repository.
    """
    for key, value in _identity_settings(identity):
        proc = _run_git(worktree, ["config", "--worktree", key, value])
        if proc.returncode != 0:
            raise GitError(f"failed to set {key} in worktree: {_git_error_text(proc)}")


def _copy_shared_files(repo_root: Path, worktree: Path) -> list[str]:
    copied: list[str] = []
    for name in (IMPLEMENTATION_PLAN_FILE, PROMPT_FILES["build"]):
        source = repo_root / name
        if not source.is_file():
            continue
        shutil.copy2(source, worktree / name)
        copied.append(name)
    return copied


# ---------------------------------------------------------------------------
# Pull requests
# ---------------------------------------------------------------------------


def _create_pull_request(worktree: Path, branch: str, *, base: str, title: str, body: str) -> str:
    command = [
        "gh",
        "pr",
        "create",
        "--head",
        branch,
        "--base",
        base,
        "--title",
        title,
        "--body",
        body,
    ]
    try:
        proc = subprocess.run(
            command,
            cwd=worktree,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitError(f"gh CLI not found: {exc}") from exc
    if proc.returncode != 0:
        raise GitError(f"gh pr create failed: {_git_error_text(proc)}")
    lines = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
    if not lines:
        raise GitError("gh pr create returned no URL")
    return lines[-1]
