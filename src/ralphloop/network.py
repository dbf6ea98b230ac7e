"""Ralphloop sandbox networking — allow-list validation and firewall script generation."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable

from ralphloop.constants import (
    DEFAULT_LOG_FILE,
    DOMAIN_LABEL_MAX_LENGTH,
    DOMAIN_LABEL_PATTERN,
    DOMAIN_MAX_LENGTH,
)
from ralphloop.utils import _append_log, _compact_log_text


def _is_valid_domain(value: str) -> bool:
    if not value or len(value) > DOMAIN_MAX_LENGTH:
        return False
    if value.startswith(".") or value.endswith("."):
        return False
    for label in value.split("."):
        if not label or len(label) > DOMAIN_LABEL_MAX_LENGTH:
            return False
        if not DOMAIN_LABEL_PATTERN.fullmatch(label):
            return False
    return True


def _filter_valid_domains(
    domains: Iterable[str],
    *,
    repo_root: Path | None = None,
    log_file: str = DEFAULT_LOG_FILE,
) -> list[str]:
    accepted: list[str] = []
    for raw in domains:
        candidate = str(raw).strip()
        if _is_valid_domain(candidate):
            if candidate not in accepted:
                accepted.append(candidate)
            continue
        warning = f"dropping invalid allow-list domain: {_compact_log_text(repr(candidate), limit=80)}"
        if repo_root is not None:
            _append_log(repo_root, f"sandbox network warning: {warning}", log_file=log_file)
        print(f"ralph sandbox: WARNING {warning}", file=sys.stderr)
    return accepted


def _base_rules(tool: str) -> list[str]:
    return [
        f"{tool} -F OUTPUT",
        f"{tool} -P OUTPUT DROP",
        f"{tool} -A OUTPUT -o lo -j ACCEPT",
        f"{tool} -A OUTPUT -p udp --dport 53 -j ACCEPT",
        f"{tool} -A OUTPUT -p tcp --dport 53 -j ACCEPT",
        f"{tool} -A OUTPUT -m state --state ESTABLISHED,RELATED -j ACCEPT",
    ]


def _domain_rules(tool: str, resolver: str, domain: str) -> list[str]:
    return [
        f"for ip in $(getent {resolver} {domain} | awk '{{print $1}}' | sort -u); do",
        f'  {tool} -A OUTPUT -d "$ip" -j ACCEPT',
        "done",
    ]


def _build_firewall_script(
    domains: Iterable[str],
    *,
    repo_root: Path | None = None,
    log_file: str = DEFAULT_LOG_FILE,
) -> str:
    """Return a shell script that restricts container egress to ``domains``.

    Domains that fail hostname validation are dropped before the script is
    rendered, so only ``[A-Za-z0-9.-]`` ever reaches the shell.
    """
    allowed = _filter_valid_domains(domains, repo_root=repo_root, log_file=log_file)

    lines = ["#!/bin/sh", "set -u", "", "# IPv4"]
    lines.extend(_base_rules("iptables"))
    for domain in allowed:
        lines.extend(_domain_rules("iptables", "ahostsv4", domain))

    lines.extend(["", "# IPv6", "if command -v ip6tables >/dev/null 2>&1; then"])
    ipv6_lines = list(_base_rules("ip6tables"))
    for domain in allowed:
        ipv6_lines.extend(_domain_rules("ip6tables", "ahostsv6", domain))
    lines.extend(f"  {line}" for line in ipv6_lines)
    lines.extend(["else", '  echo "ip6tables not available; skipping IPv6 rules" >&2', "fi", ""])
    return "\n".join(lines)
