"""Ralphloop constants — paths, defaults, and classification tables."""

from __future__ import annotations

import re
from pathlib import Path

PACKAGE_SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"

# ---------------------------------------------------------------------------
# Working-copy layout
# ---------------------------------------------------------------------------

RALPH_DIR_NAME = ".ralph"
STATE_FILE_RELATIVE = ".ralph/state.json"
DEFAULT_LOG_FILE = ".ralph/logs/loop.log"
PROMPT_TEMP_RELATIVE = ".ralph/prompt.tmp"
CONFIG_FILE_NAME = "ralph.yaml"
IMPLEMENTATION_PLAN_FILE = "IMPLEMENTATION_PLAN.md"
AGENTS_FILE = "AGENTS.md"
WORKTREES_DIR = ".worktrees"

MODES = ("plan", "build")
PROMPT_FILES = {
    "plan": "PROMPT_plan.md",
    "build": "PROMPT_build.md",
}

# ---------------------------------------------------------------------------
# Termination reasons
# ---------------------------------------------------------------------------

OUTCOME_MAX_ITERATIONS = "max_iterations_reached"
OUTCOME_COMPLETION = "completion_detected"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_FATAL = "fatal_error"
OUTCOME_REASONS = (
    OUTCOME_MAX_ITERATIONS,
    OUTCOME_COMPLETION,
    OUTCOME_CANCELLED,
    OUTCOME_FATAL,
)

# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

VALIDATION_ERROR_PREFIX = "Validation error:"
AGENT_TIMEOUT_PREFIX = "Agent timeout: "
AGENT_RATE_LIMIT_PREFIX = "Agent rate limit: "
GIT_PUSH_FAILED_PREFIX = "Git push failed: "

TIMEOUT_MARKERS = ("timed out",)
RATE_LIMIT_MARKERS = (
    "resource_exhausted",
    "rate limit",
    "Rate limit",
    "429",
    "quota",
    "Quota",
)
# Markers that identify a stored last_error as a rate-limit error.
PREVIOUS_RATE_LIMIT_MARKERS = ("rate limit", "resource_exhausted")

RATE_LIMIT_FIRST_BACKOFF_SECONDS = 30
RATE_LIMIT_BACKOFF_TABLE: tuple[tuple[int, int], ...] = (
    (1, 30),
    (2, 60),
    (3, 120),
    (4, 300),
)
RATE_LIMIT_BACKOFF_CAP_SECONDS = 600

# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

AGENT_PROVIDERS = ("claude", "cursor")
DEFAULT_AGENT_PROVIDER = "claude"
PROVIDER_ENV_VAR = "RALPH_PROVIDER"
DEFAULT_CLAUDE_PATH = "claude"
DEFAULT_CLAUDE_MODEL = "opus"
DEFAULT_CURSOR_PATH = "agent"
DEFAULT_TIMEOUT_MINUTES = 60

# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------

DEFAULT_SANDBOX_IMAGE = "ralph:latest"
CONTAINER_NAME_PREFIX = "ralph-"
CONTAINER_LABEL = "ralphloop.managed"
CONTAINER_WORKDIR = "/workspace"
CONTAINER_RESTART_WAIT_SECONDS = 2.0
CONTAINER_STOP_TIMEOUT_SECONDS = 5
DOCKER_CLIENT_TIMEOUT_SECONDS = 60
DEFAULT_MEMORY_LIMIT = "8g"
DEFAULT_CPU_LIMIT = "4"
DEFAULT_DNS_SERVERS = ("8.8.8.8", "1.1.1.1")
NETWORK_POLICIES = ("allow-all", "allowlist", "deny")
DEFAULT_NETWORK_POLICY = "allow-all"

HEALTHY_STATUSES = frozenset({"running"})
RESTARTABLE_STATUSES = frozenset({"exited", "created"})
UNRECOVERABLE_STATUSES = frozenset({"dead", "removing", ""})

DEFAULT_CREDENTIAL_MOUNTS: tuple[tuple[str, str], ...] = (
    ("~/.ssh", "/root/.ssh"),
    ("~/.gitconfig", "/root/.gitconfig"),
    ("~/.npmrc", "/root/.npmrc"),
    ("~/.cargo/credentials.toml", "/root/.cargo/credentials.toml"),
    ("~/.pypirc", "/root/.pypirc"),
)

DOMAIN_MAX_LENGTH = 253
DOMAIN_LABEL_MAX_LENGTH = 63
DOMAIN_LABEL_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?$")

# ---------------------------------------------------------------------------
# Loop defaults
# ---------------------------------------------------------------------------

DEFAULT_IDLE_THRESHOLD = 2
DEFAULT_MAX_CONSECUTIVE_ERRORS = 5
DEFAULT_PROTECTED_BRANCHES = ("main", "master", "production")
DEFAULT_VALIDATION_COMMAND = "nix flake check --quiet"

# ---------------------------------------------------------------------------
# Branch builds
# ---------------------------------------------------------------------------

BRANCH_HEADER_PATTERN = re.compile(r"^##\s+Branch:\s*(?P<name>.+?)\s*$")
BRANCH_GOAL_PATTERN = re.compile(r"^Goal:\s*(?P<value>.+?)\s*$")
BRANCH_BASE_PATTERN = re.compile(r"^Base:\s*(?P<value>.+?)\s*$")
INCOMPLETE_TASK_PATTERN = re.compile(r"^\s*[-*]\s+\[ \]", re.MULTILINE)
BRANCH_NAME_SAFE_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

NOTIFY_EVENTS = ("complete", "error")
WEBHOOK_MAX_ATTEMPTS = 3
WEBHOOK_RETRY_DELAYS_SECONDS = (2.0, 4.0)
WEBHOOK_TIMEOUT_SECONDS = 10.0
DESKTOP_NOTIFY_TITLE = "Ralph loop"

# ---------------------------------------------------------------------------
# Clean targets
# ---------------------------------------------------------------------------

CLEAN_ALL_FILES = (
    CONFIG_FILE_NAME,
    PROMPT_FILES["plan"],
    PROMPT_FILES["build"],
    AGENTS_FILE,
    IMPLEMENTATION_PLAN_FILE,
)
