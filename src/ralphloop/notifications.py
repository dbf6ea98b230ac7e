"""Ralphloop notifications — webhook, desktop, and sound delivery for loop events."""

from __future__ import annotations

import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable

import requests

from ralphloop.constants import (
    DEFAULT_LOG_FILE,
    DESKTOP_NOTIFY_TITLE,
    NOTIFY_EVENTS,
    WEBHOOK_MAX_ATTEMPTS,
    WEBHOOK_RETRY_DELAYS_SECONDS,
    WEBHOOK_TIMEOUT_SECONDS,
)
from ralphloop.models import NotificationConfig, NotificationDetails
from ralphloop.utils import _append_log, _compact_log_text


def _resolve_channel(value: str) -> tuple[str, str]:
    text = str(value or "").strip()
    lowered = text.lower()
    if not text or lowered == "none":
        return ("none", "")
    if lowered.startswith("webhook:"):
        return ("webhook", text[len("webhook:"):].strip())
    if lowered.startswith(("http://", "https://")):
        return ("webhook", text)
    if lowered in {"desktop", "sound"}:
        return (lowered, "")
    return ("unknown", text)


def _webhook_payload(event: str, details: NotificationDetails) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": event,
        "iteration": details.iteration,
        "message": details.message,
        "timestamp": details.timestamp,
    }
    if details.context:
        payload["context"] = details.context
    return payload


def _send_webhook(
    url: str,
    payload: dict[str, Any],
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[bool, str]:
    last_error = ""
    for attempt in range(1, WEBHOOK_MAX_ATTEMPTS + 1):
        try:
            response = requests.post(url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
        except requests.exceptions.RequestException as exc:
            last_error = f"request failed: {exc}"
        else:
            if response.status_code < 400:
                return (True, f"delivered status={response.status_code}")
            last_error = f"status {response.status_code}"
            if response.status_code != 429 and response.status_code < 500:
                return (False, last_error)
        if attempt < WEBHOOK_MAX_ATTEMPTS:
            sleep(WEBHOOK_RETRY_DELAYS_SECONDS[min(attempt - 1, len(WEBHOOK_RETRY_DELAYS_SECONDS) - 1)])
    return (False, f"{last_error} after {WEBHOOK_MAX_ATTEMPTS} attempts")


def _run_first_available(candidates: list[list[str]]) -> bool:
    for argv in candidates:
        if shutil.which(argv[0]) is None:
            continue
        try:
            proc = subprocess.run(
                argv,
                check=False,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired):
            continue
        if proc.returncode == 0:
            return True
    return False


def _send_desktop(title: str, message: str) -> bool:
    escaped = message.replace("\\", "\\\\").replace('"', '\\"')
    return _run_first_available(
        [
            ["notify-send", title, message],
            ["osascript", "-e", f'display notification "{escaped}" with title "{title}"'],
            ["growlnotify", "-t", title, "-m", message],
        ]
    )


def _play_sound() -> bool:
    if _run_first_available(
        [
            ["paplay", "/usr/share/sounds/freedesktop/stereo/complete.oga"],
            ["aplay", "-q", "/usr/share/sounds/alsa/Front_Center.wav"],
            ["afplay", "/System/Library/Sounds/Glass.aiff"],
            ["beep"],
        ]
    ):
        return True
    sys.stdout.write("\x07")
    sys.stdout.flush()
    return True


class Notifier:
    """Best-effort delivery of ``complete`` and ``error`` loop events."""

    def __init__(
        self,
        config: NotificationConfig,
        *,
        repo_root: Path | None = None,
        log_file: str = DEFAULT_LOG_FILE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.repo_root = repo_root
        self.log_file = log_file
        self._sleep = sleep

    def _log(self, message: str) -> None:
        if self.repo_root is not None:
            _append_log(self.repo_root, message, log_file=self.log_file)

    def notify(self, event: str, details: NotificationDetails) -> None:
        if event not in NOTIFY_EVENTS:
            self._log(f"notification skipped unknown event={event}")
            return
        target = self.config.on_complete if event == "complete" else self.config.on_error
        channel, value = _resolve_channel(target)
        if channel == "none":
            return
        try:
            if channel == "webhook":
                ok, detail = _send_webhook(value, _webhook_payload(event, details), sleep=self._sleep)
            elif channel == "desktop":
                ok = _send_desktop(DESKTOP_NOTIFY_TITLE, f"[{event}] {details.message}")
                detail = "desktop"
            elif channel == "sound":
                ok = _play_sound()
                detail = "sound"
            else:
                ok, detail = (False, f"unknown notification target '{value}'")
        except Exception as exc:
            ok, detail = (False, f"notification error: {exc}")
        self._log(
            f"notification event={event} channel={channel} ok={str(ok).lower()} "
            f"detail={_compact_log_text(detail, limit=160)}"
        )
