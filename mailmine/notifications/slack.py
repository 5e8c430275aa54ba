"""Slack delivery for review exceptions."""

import logging

import httpx

from mailmine.collaborators import Alerter
from mailmine.config import NotificationsConfig, get_config
from mailmine.models import ExceptionSeverity, ExceptionType, ReviewException

logger = logging.getLogger(__name__)

SEVERITY_EMOJI = {
    ExceptionSeverity.HIGH: ":red_circle:",
    ExceptionSeverity.MEDIUM: ":large_yellow_circle:",
    ExceptionSeverity.LOW: ":large_green_circle:",
}

TYPE_LABELS = {
    ExceptionType.LOW_CONFIDENCE: "Low Confidence Prediction",
    ExceptionType.CONFLICTING_LABELS: "Conflicting Labels",
    ExceptionType.NOVEL_PATTERN: "Novel Pattern Detected",
    ExceptionType.ERROR: "Processing Error",
}


def truncate(text: str, max_length: int = 100) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_exception_message(exception: ReviewException, app_url: str) -> str:
    emoji = SEVERITY_EMOJI.get(exception.severity, ":robot_face:")
    label = TYPE_LABELS.get(exception.type, "Unknown")
    return (
        f"{emoji} *Review needed*\n\n"
        f"*Type:* {label}\n"
        f'*Item:* "{truncate(exception.item.content)}"\n'
        f"*Reason:* {exception.reason}\n\n"
        f"<{app_url.rstrip('/')}/dashboard/train|Review in the app>"
    )


def build_exception_blocks(exception: ReviewException, app_url: str) -> list[dict]:
    """Block Kit layout for one exception: summary, reason and a review button."""
    emoji = SEVERITY_EMOJI.get(exception.severity, ":robot_face:")
    label = TYPE_LABELS.get(exception.type, "Unknown")
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{label}*\n\"{truncate(exception.item.content)}\"",
            },
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": exception.reason}],
        },
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Review"},
                    "url": f"{app_url.rstrip('/')}/dashboard/train",
                }
            ],
        },
    ]


async def send_slack_notification(
    message: str,
    blocks: list[dict] | None = None,
    config: NotificationsConfig | None = None,
) -> bool:
    """Send a notification to Slack via webhook.

    Args:
        message: The fallback text message.
        blocks: Optional list of Slack Block Kit blocks for rich formatting.
        config: Notification settings; read from the environment when omitted.

    Returns:
        bool: True if successful, False otherwise.
    """
    config = config or get_config().notifications

    if not config.enabled:
        logger.debug("slack_notifications_disabled_by_config")
        return False

    if not config.slack_webhook_url:
        logger.warning("slack_webhook_url_missing: Notifications enabled but no webhook URL configured")
        return False

    payload: dict = {"text": message}
    if blocks:
        payload["blocks"] = blocks

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(config.slack_webhook_url, json=payload)
    except httpx.HTTPError as e:
        logger.error("slack_notification_error: %s", str(e))
        return False

    if response.status_code != 200:
        logger.error(
            "slack_notification_failed: status=%s response=%s",
            response.status_code,
            response.text,
        )
        return False

    logger.info("slack_notification_sent")
    return True


class SlackAlerter(Alerter):
    """Posts review exceptions to a Slack channel through an incoming webhook."""

    def __init__(self, config: NotificationsConfig | None = None):
        self.config = config

    async def notify(self, user_id: str, exception: ReviewException) -> bool:
        config = self.config or get_config().notifications
        message = format_exception_message(exception, config.app_url)
        blocks = build_exception_blocks(exception, config.app_url)
        delivered = await send_slack_notification(message, blocks=blocks, config=config)
        if delivered:
            logger.info("training_alert_sent: user=%s exception=%s", user_id, exception.id)
        return delivered
