from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import ralphloop.detection as detection
from ralphloop.detection import CompletionDetector


def test_repeated_fingerprint_reaches_threshold() -> None:
    detector = CompletionDetector(idle_threshold=2)
    detector.record_commit("abc")

    assert detector.check_completion("abc") is False
    assert detector.idle_count == 1
    assert detector.check_completion("abc") is True
    assert detector.idle_count == 2


def test_changed_fingerprint_resets_idle_count() -> None:
    detector = CompletionDetector(idle_threshold=2)
    detector.record_commit("abc")
    detector.check_completion("abc")

    assert detector.check_completion("def") is False
    assert detector.idle_count == 0
    assert detector.last_commit == "def"


def test_missing_fingerprint_counts_as_idle() -> None:
    detector = CompletionDetector(idle_threshold=2)
    detector.record_commit(None)

    assert detector.check_completion(None) is False
    assert detector.check_completion(None) is True


def test_missing_current_fingerprint_keeps_stored_commit() -> None:
    detector = CompletionDetector(idle_threshold=3)
    detector.record_commit("abc")

    detector.check_completion(None)

    assert detector.last_commit == "abc"
    assert detector.idle_count == 1


def test_first_fingerprint_after_none_is_progress() -> None:
    detector = CompletionDetector(idle_threshold=2)
    detector.record_commit(None)

    assert detector.check_completion("abc") is False
    assert detector.idle_count == 0
    assert detector.last_commit == "abc"


def test_record_commit_keeps_first_observation() -> None:
    detector = CompletionDetector(idle_threshold=2)
    detector.record_commit("first")
    detector.record_commit("second")

    assert detector.last_commit == "first"


def test_from_state_restores_progress() -> None:
    detector = CompletionDetector.from_state(3, "abc", 2)

    assert detector.last_commit == "abc"
    assert detector.idle_count == 2
    assert detector.check_completion("abc") is True


def test_get_commit_fingerprint(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    def _fake_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
        assert args == ["rev-parse", "HEAD"]
        return subprocess.CompletedProcess(args, 0, "deadbeef\n", "")

    monkeypatch.setattr(detection, "_run_git", _fake_git)
    assert detection._get_commit_fingerprint(tmp_path) == "deadbeef"

    monkeypatch.setattr(
        detection,
        "_run_git",
        lambda _root, args: subprocess.CompletedProcess(args, 128, "", "not a git repository"),
    )
    assert detection._get_commit_fingerprint(tmp_path) is None
