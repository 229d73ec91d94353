"""
Desktop notifications for ralph runs.

Sent through notify-send (freedesktop). Hosts without it, such as CI or
servers, skip quietly.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)

APP_NAME = "Ralph"

VALID_URGENCIES = ("low", "normal", "critical")

MAX_NOTIFICATION_LENGTH = 200


def _truncate(text: str) -> str:
    if len(text) > MAX_NOTIFICATION_LENGTH:
        return text[:MAX_NOTIFICATION_LENGTH] + "..."
    return text


def notify(title: str, message: str, urgency: str = "normal") -> None:
    """
    Send a desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    try:
        result = subprocess.run(
            ["notify-send", "--urgency", urgency, "--app-name", APP_NAME, title, _truncate(message)],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def notify_blocked(item_ref: str, reason: str) -> None:
    notify(f"Ralph: {item_ref}", f"Blocked: {reason}", "critical")


def notify_escalation(message: str) -> None:
    """A whole batch produced no successes; the run stopped."""
    notify("Ralph: run stopped", message, "critical")


def notify_run_complete(processed: int, succeeded: int, blocked: int, failed: int) -> None:
    notify(
        "Ralph: run complete",
        f"{processed} processed: {succeeded} succeeded, {blocked} blocked, {failed} failed",
        "low",
    )
