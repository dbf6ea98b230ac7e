"""Ralphloop completion detection — idle-iteration tracking over commit fingerprints."""

from __future__ import annotations

from pathlib import Path

from ralphloop.utils import _run_git


def _get_commit_fingerprint(repo_root: Path) -> str | None:
    proc = _run_git(repo_root, ["rev-parse", "HEAD"])
    if proc.returncode != 0:
        return None
    fingerprint = proc.stdout.strip()
    return fingerprint or None


class CompletionDetector:
    """Declares completion once the repository stops changing.

    Each call to :meth:`check_completion` compares the observed fingerprint with
    the stored one. A repeat (including "no fingerprint available") counts as an
    idle iteration; a change resets the count. Completion is reported when the
    idle count reaches ``idle_threshold``.
    """

    def __init__(self, idle_threshold: int) -> None:
        self.idle_threshold = idle_threshold
        self._last_commit: str | None = None
        self._idle_count = 0

    @classmethod
    def from_state(
        cls,
        idle_threshold: int,
        last_commit: str | None,
        idle_iterations: int,
    ) -> CompletionDetector:
        detector = cls(idle_threshold)
        detector._last_commit = last_commit
        detector._idle_count = max(0, int(idle_iterations))
        return detector

    @property
    def last_commit(self) -> str | None:
        return self._last_commit

    @property
    def idle_count(self) -> int:
        return self._idle_count

    def record_commit(self, fingerprint: str | None) -> None:
        if self._last_commit is None:
            self._last_commit = fingerprint

    def check_completion(self, fingerprint: str | None) -> bool:
        if fingerprint is not None and fingerprint != self._last_commit:
            self._idle_count = 0
            self._last_commit = fingerprint
        else:
            self._idle_count += 1
        return self._idle_count >= self.idle_threshold
