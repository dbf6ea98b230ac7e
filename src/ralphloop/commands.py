from __future__ import annotations

import argparse
import importlib.resources as importlib_resources
import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ralphloop.branches import _format_result_line, _summarize_results, build_branches
from ralphloop.config import _load_config
from ralphloop.constants import (
    AGENT_PROVIDERS,
    AGENTS_FILE,
    CLEAN_ALL_FILES,
    CONFIG_FILE_NAME,
    DEFAULT_SANDBOX_IMAGE,
    MODES,
    PROMPT_FILES,
    RALPH_DIR_NAME,
)
from ralphloop.containers import _build_image
from ralphloop.git_ops import _recent_commits, _remove_all_worktrees, _revert_commits
from ralphloop.loop import run_loop
from ralphloop.models import ConfigError, GitError, LoopError, SandboxError, StateError
from ralphloop.state import _cancel_loop, _load_state, _remove_state
from ralphloop.utils import _format_duration, _parse_utc

_INIT_FILES: tuple[tuple[str, str, str], ...] = (
    (CONFIG_FILE_NAME, "ralph.yaml", "Project configuration"),
    (PROMPT_FILES["plan"], "PROMPT_plan.md", "Planning mode prompt"),
    (PROMPT_FILES["build"], "PROMPT_build.md", "Building mode prompt"),
    (AGENTS_FILE, "AGENTS.md", "Operational guide (customize this!)"),
)


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got '{value}'") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got '{value}'")
    return parsed


def _resolve_root(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "dir", ".") or ".").expanduser().resolve()


def _read_template(name: str) -> str:
    resource = importlib_resources.files("ralphloop").joinpath("templates").joinpath(name)
    return resource.read_text(encoding="utf-8")


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    repo_root.mkdir(parents=True, exist_ok=True)
    print("ralph init")
    for target, template, description in _INIT_FILES:
        path = repo_root / target
        existed = path.exists()
        if existed and not args.force:
            print(f"  skipped:     {target} (exists; use --force to overwrite)")
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(_read_template(template), encoding="utf-8")
        action = "overwritten" if existed else "created"
        print(f"  {action + ':':<12} {target} - {description}")
    return 0


# ---------------------------------------------------------------------------
# loop / build-branches
# ---------------------------------------------------------------------------


def _cmd_loop(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    try:
        config = _load_config(repo_root, provider_override=args.provider)
        outcome = run_loop(
            repo_root,
            config,
            mode=args.mode,
            max_iterations=args.max_iterations,
            prompt_file=args.prompt,
            no_sandbox=args.no_sandbox,
        )
    except (ConfigError, StateError, LoopError) as exc:
        print(f"ralph loop: ERROR {exc}", file=sys.stderr)
        return 1
    print(
        f"ralph loop: finished reason={outcome.reason} "
        f"final_iteration={outcome.final_iteration} errors={outcome.error_count}"
    )
    print(f"  {outcome.message}")
    return outcome.exit_code


def _cmd_build_branches(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    try:
        config = _load_config(repo_root, provider_override=args.provider)
        results = build_branches(
            repo_root,
            config,
            parallel=args.parallel,
            plan_file=args.plan,
            max_iterations=args.max_iterations,
            no_sandbox=args.no_sandbox,
            create_pr=True if args.create_pr else None,
        )
    except (ConfigError, LoopError) as exc:
        print(f"ralph build-branches: ERROR {exc}", file=sys.stderr)
        return 1
    if not results:
        print("ralph build-branches: no branches with incomplete tasks")
        return 0
    succeeded, failed = _summarize_results(results)
    print(f"ralph build-branches: {succeeded} succeeded, {failed} failed")
    for result in results:
        print(_format_result_line(result))
    return 1 if failed else 0


# ---------------------------------------------------------------------------
# cancel / status
# ---------------------------------------------------------------------------


def _cmd_cancel(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    try:
        _cancelled, message = _cancel_loop(repo_root)
    except StateError as exc:
        print(f"ralph cancel: ERROR {exc}", file=sys.stderr)
        return 1
    print(f"ralph cancel: {message}")
    return 0


def _truncate_error(text: str, limit: int = 80) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: limit - 3]}..."


def _format_status(state: dict[str, Any] | None, commits: list[str], *, now: datetime | None = None) -> list[str]:
    if state is None:
        return ["  No loop state found. Run `ralph loop plan` or `ralph loop build` to start."]
    now = now or datetime.now(timezone.utc)
    iteration = int(state["iteration"])
    max_iterations = state.get("max_iterations")
    lines = [
        f"  Status:     {'active' if state.get('active') else 'inactive'}",
        f"  Mode:       {state['mode']}",
        f"  Iteration:  {iteration}",
        f"  Max:        {max_iterations if max_iterations is not None else 'unlimited'}",
    ]
    started = _parse_utc(state.get("started_at"))
    if started is not None:
        elapsed = (now - started).total_seconds()
        lines.append(f"  Started:    {started.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        lines.append(f"  Elapsed:    {_format_duration(elapsed)}")
        last = _parse_utc(state.get("last_iteration_at"))
        if last is not None:
            lines.append(f"  Last iter:  {last.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        if iteration > 1:
            avg = elapsed / iteration
            lines.append(f"  Avg/iter:   {_format_duration(avg)}")
            if max_iterations is not None and iteration < int(max_iterations):
                remaining = avg * (int(max_iterations) - iteration)
                lines.append(f"  Est. left:  {_format_duration(remaining)}")
    error_count = int(state.get("error_count", 0))
    if error_count > 0:
        lines.append(f"  Errors:     {error_count} (consecutive: {state.get('consecutive_errors', 0)})")
        last_error = state.get("last_error")
        if last_error:
            lines.append(f"  Last error: {_truncate_error(' '.join(str(last_error).split()))}")
    if commits:
        lines.append("  Recent commits:")
        lines.extend(f"    {commit}" for commit in commits)
    return lines


def _cmd_status(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    try:
        state = _load_state(repo_root)
    except StateError as exc:
        print(f"ralph status: ERROR {exc}", file=sys.stderr)
        return 1
    print("ralph status")
    for line in _format_status(state, _recent_commits(repo_root)):
        print(line)
    return 0


# ---------------------------------------------------------------------------
# clean / revert / image
# ---------------------------------------------------------------------------


def _remove_empty_dirs(root: Path) -> None:
    if not root.is_dir():
        return
    for path in sorted(root.rglob("*"), key=lambda item: len(item.parts), reverse=True):
        if path.is_dir() and not any(path.iterdir()):
            path.rmdir()
    if not any(root.iterdir()):
        root.rmdir()


def _cmd_clean(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    try:
        log_file = _load_config(repo_root).monitoring.log_file
    except ConfigError as exc:
        print(f"ralph clean: ERROR {exc}", file=sys.stderr)
        return 1
    removed: list[str] = []
    if args.all or args.worktrees:
        for branch in _remove_all_worktrees(repo_root, log_file=log_file):
            removed.append(f"worktree {branch}")
    if _remove_state(repo_root):
        removed.append(f"{RALPH_DIR_NAME}/state.json")
    if args.all:
        for name in CLEAN_ALL_FILES:
            path = repo_root / name
            if path.is_file():
                path.unlink()
                removed.append(name)
        logs_dir = repo_root / RALPH_DIR_NAME / "logs"
        if logs_dir.is_dir():
            shutil.rmtree(logs_dir)
            removed.append(f"{RALPH_DIR_NAME}/logs")
        custom_log = repo_root / log_file
        if custom_log.is_file():
            custom_log.unlink()
            removed.append(log_file)
    _remove_empty_dirs(repo_root / RALPH_DIR_NAME)

    if not removed:
        print("ralph clean: nothing to clean")
        return 0
    print("ralph clean: removed")
    for item in removed:
        print(f"  {item}")
    return 0


def _cmd_revert(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    print(f"ralph revert: reverting last {args.count} commit(s)")
    try:
        config = _load_config(repo_root)
        commits = _revert_commits(repo_root, args.count, log_file=config.monitoring.log_file)
    except (ConfigError, GitError) as exc:
        print(f"ralph revert: ERROR {exc}", file=sys.stderr)
        return 1
    for commit in commits:
        print(f"  {commit}")
    print("ralph revert: done (use 'git reflog' to recover if needed)")
    return 0


def _cmd_image_build(args: argparse.Namespace) -> int:
    repo_root = _resolve_root(args)
    try:
        config = _load_config(repo_root)
        image_id = _build_image(
            repo_root,
            dockerfile=args.dockerfile,
            tag=args.tag,
            log_file=config.monitoring.log_file,
        )
    except (ConfigError, SandboxError) as exc:
        print(f"ralph image build: ERROR {exc}", file=sys.stderr)
        return 1
    print(f"ralph image build: built {args.tag} ({image_id})")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_dir_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--dir",
        default=".",
        help="Working copy to operate on (default: current directory)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ralph", description="ralph loop command line interface")
    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init", help="Write ralph.yaml and prompt templates")
    init.add_argument("--force", action="store_true", help="Overwrite existing files")
    _add_dir_argument(init)
    init.set_defaults(handler=_cmd_init)

    loop = subparsers.add_parser("loop", help="Run the agent loop in plan or build mode")
    loop.add_argument("mode", choices=MODES, help="Loop mode")
    loop.add_argument(
        "--max-iterations",
        type=_positive_int,
        default=None,
        help="Stop after this many iterations (default: unlimited)",
    )
    loop.add_argument("--no-sandbox", action="store_true", help="Run the agent directly, without Docker")
    loop.add_argument("--prompt", default=None, help="Custom prompt file (default: PROMPT_<mode>.md)")
    loop.add_argument("--provider", choices=AGENT_PROVIDERS, default=None, help="Agent provider override")
    _add_dir_argument(loop)
    loop.set_defaults(handler=_cmd_loop)

    branches = subparsers.add_parser(
        "build-branches",
        help="Build every incomplete branch section of IMPLEMENTATION_PLAN.md in its own worktree",
    )
    policy = branches.add_mutually_exclusive_group()
    policy.add_argument("--parallel", action="store_true", help="Build branches concurrently")
    policy.add_argument("--sequential", action="store_true", help="Build branches one at a time (default)")
    branches.add_argument("--plan", default=None, help="Plan file (default: IMPLEMENTATION_PLAN.md)")
    branches.add_argument("--max-iterations", type=_positive_int, default=None, help="Per-branch iteration limit")
    branches.add_argument("--no-sandbox", action="store_true", help="Run agents directly, without Docker")
    branches.add_argument("--create-pr", action="store_true", help="Open a pull request for each successful branch")
    branches.add_argument("--provider", choices=AGENT_PROVIDERS, default=None, help="Agent provider override")
    _add_dir_argument(branches)
    branches.set_defaults(handler=_cmd_build_branches)

    cancel = subparsers.add_parser("cancel", help="Cancel the active loop at its next iteration boundary")
    _add_dir_argument(cancel)
    cancel.set_defaults(handler=_cmd_cancel)

    status = subparsers.add_parser("status", help="Show loop progress")
    _add_dir_argument(status)
    status.set_defaults(handler=_cmd_status)

    clean = subparsers.add_parser("clean", help="Remove loop state")
    clean.add_argument("--all", action="store_true", help="Also remove config, prompts, plan, logs, and worktrees")
    clean.add_argument("--worktrees", action="store_true", help="Also remove branch worktrees")
    _add_dir_argument(clean)
    clean.set_defaults(handler=_cmd_clean)

    revert = subparsers.add_parser("revert", help="Hard-reset the last N commits")
    revert.add_argument("count", nargs="?", type=_positive_int, default=1, help="Number of commits (default: 1)")
    _add_dir_argument(revert)
    revert.set_defaults(handler=_cmd_revert)

    image = subparsers.add_parser("image", help="Manage the sandbox image")
    image_sub = image.add_subparsers(dest="image_command")
    image_build = image_sub.add_parser("build", help="Build the sandbox image from a Dockerfile")
    image_build.add_argument("--dockerfile", default="Dockerfile", help="Dockerfile path (default: Dockerfile)")
    image_build.add_argument("--tag", default=DEFAULT_SANDBOX_IMAGE, help=f"Image tag (default: {DEFAULT_SANDBOX_IMAGE})")
    _add_dir_argument(image_build)
    image_build.set_defaults(handler=_cmd_image_build)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
