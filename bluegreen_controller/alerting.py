"""
Blue/Green Deployment Controller - Notifications.

============================================================
PURPOSE
============================================================
Tell humans what the controller did.

EVENTS:
- Every terminal transition (Promoted, RolledBack, Failed, Aborted)
- Rollback not confirmed within the grace period (CRITICAL)

DELIVERY:
- emit() never blocks the caller: each alert is delivered by a
  background task
- A failing sender is logged and never affects the deployment

SENDERS:
- Telegram (Bot API)
- Generic JSON webhook
- Console (development)

============================================================
"""

import asyncio
import html
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, TextIO

import aiohttp

from .clock import Clock, SystemClock
from .config import AlertingConfig
from .types import DeploymentState


logger = logging.getLogger(__name__)


# ============================================================
# EVENT AND ALERT TYPES
# ============================================================

class AlertPriority(Enum):
    """Alert priority levels."""

    LOW = "low"
    """Informational only."""

    HIGH = "high"
    """Deployment did not go through."""

    CRITICAL = "critical"
    """Traffic may still be on a bad revision; act now."""


@dataclass(frozen=True)
class DeploymentEvent:
    """Something a human should know about a deployment."""

    deployment_id: str
    service_name: str
    state: DeploymentState
    cause: Optional[str] = None
    green_revision: Optional[str] = None
    critical: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "service_name": self.service_name,
            "state": self.state.value,
            "cause": self.cause,
            "green_revision": self.green_revision,
            "critical": self.critical,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Alert:
    """Alert to be sent."""

    priority: AlertPriority
    title: str
    message: str
    event: DeploymentEvent
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# ALERT FORMATTERS
# ============================================================

def format_deployment_alert(event: DeploymentEvent) -> Alert:
    """
    Format a deployment event as an alert.

    Args:
        event: Deployment event

    Returns:
        Formatted alert
    """
    if event.critical:
        priority = AlertPriority.CRITICAL
        title = f"🚨 ROLLBACK STUCK: {event.service_name}"
    elif event.state == DeploymentState.PROMOTED:
        priority = AlertPriority.LOW
        title = f"✅ PROMOTED: {event.service_name}"
    elif event.state == DeploymentState.ABORTED:
        priority = AlertPriority.HIGH
        title = f"⏹️ ABORTED: {event.service_name}"
    elif event.state == DeploymentState.FAILED:
        priority = AlertPriority.HIGH
        title = f"❌ FAILED: {event.service_name}"
    else:
        priority = AlertPriority.HIGH
        title = f"↩️ ROLLED BACK: {event.service_name}"

    lines = [
        f"**Deployment:** `{event.deployment_id}`",
        f"**State:** {event.state.value}",
        f"**Time:** {event.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}",
    ]
    if event.green_revision:
        lines.append(f"**Revision:** `{event.green_revision}`")
    if event.cause:
        lines.append("")
        lines.append("**Cause:**")
        lines.append(event.cause)

    return Alert(
        priority=priority,
        title=title,
        message="\n".join(lines),
        event=event,
        details=event.to_dict(),
    )


# ============================================================
# ALERT SENDER INTERFACE
# ============================================================

class AlertSender(ABC):
    """Abstract interface for sending alerts."""

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """
        Send an alert.

        Args:
            alert: Alert to send

        Returns:
            True if sent successfully
        """
        pass


class TelegramAlertSender(AlertSender):
    """
    Posts deployment alerts to a Telegram chat through the Bot API.

    Messages use HTML formatting; revision names and causes are
    escaped since they come from user input.
    """

    MESSAGE_LIMIT = 4096

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout_seconds: float = 10.0,
    ):
        self._chat_id = chat_id
        self._endpoint = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def render(self, alert: Alert) -> str:
        event = alert.event
        lines = [
            f"<b>{html.escape(alert.title)}</b>",
            "",
            f"Deployment: <code>{html.escape(event.deployment_id)}</code>",
            f"State: {event.state.value}",
        ]
        if event.green_revision:
            lines.append(f"Revision: <code>{html.escape(event.green_revision)}</code>")
        if event.cause:
            lines.append(f"Cause: {html.escape(event.cause)}")

        text = "\n".join(lines)
        if len(text) > self.MESSAGE_LIMIT:
            text = text[:self.MESSAGE_LIMIT - 1] + "…"
        return text

    async def send(self, alert: Alert) -> bool:
        body = {
            "chat_id": self._chat_id,
            "text": self.render(alert),
            "parse_mode": "HTML",
            "disable_notification": alert.priority == AlertPriority.LOW,
        }

        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(self._endpoint, json=body) as response:
                if response.status != 200:
                    logger.error(
                        f"Telegram rejected alert for {alert.event.service_name} "
                        f"({response.status}): {(await response.text())[:200]}"
                    )
                    return False

        logger.info(f"Telegram alert delivered: {alert.title}")
        return True


class WebhookAlertSender(AlertSender):
    """
    Posts the event as JSON to a webhook URL.
    """

    def __init__(self, url: str, timeout_seconds: float = 10.0):
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send(self, alert: Alert) -> bool:
        body = {
            "title": alert.title,
            "priority": alert.priority.value,
            "text": alert.message,
            "event": alert.details,
        }

        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(self._url, json=body) as response:
                if not 200 <= response.status < 300:
                    logger.error(
                        f"Webhook rejected alert ({response.status}): "
                        f"{(await response.text())[:200]}"
                    )
                    return False

        logger.info(f"Webhook alert delivered: {alert.title}")
        return True


class ConsoleAlertSender(AlertSender):
    """
    Writes one line per alert to a stream (development).
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream or sys.stderr

    async def send(self, alert: Alert) -> bool:
        event = alert.event
        line = (
            f"[{alert.priority.value.upper()}] {alert.title} | "
            f"deployment={event.deployment_id} state={event.state.value}"
        )
        if event.cause:
            line += f" cause={event.cause}"
        print(line, file=self._stream, flush=True)
        return True



# ============================================================
# ALERTING SERVICE
# ============================================================

class AlertingService:
    """
    Fans deployment events out to every sender.

    Handles:
    - Non-blocking delivery (background tasks)
    - Deduplication of identical alerts
    - Failure isolation between senders
    """

    def __init__(
        self,
        config: Optional[AlertingConfig] = None,
        senders: Optional[List[AlertSender]] = None,
        clock: Optional[Clock] = None,
    ):
        self._config = config or AlertingConfig()
        self._senders = senders or []
        self._clock = clock or SystemClock()

        self._recent_alerts: Dict[str, datetime] = {}
        self._pending: Set[asyncio.Task] = set()

    @property
    def senders(self) -> List[AlertSender]:
        return list(self._senders)

    def add_sender(self, sender: AlertSender) -> None:
        """Add an alert sender."""
        self._senders.append(sender)

    def emit(self, event: DeploymentEvent) -> Optional[asyncio.Task]:
        """
        Schedule delivery of an event and return immediately.

        Returns:
            The delivery task, or None if nothing is sent
        """
        if not self._config.enabled or not self._senders:
            return None

        alert = format_deployment_alert(event)
        if self._is_duplicate(alert):
            logger.debug(f"Skipping duplicate alert: {alert.title}")
            return None

        task = asyncio.get_running_loop().create_task(self._deliver(alert))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, alert: Alert) -> None:
        """Send alert through all configured senders."""
        for sender in self._senders:
            try:
                sent = await asyncio.wait_for(
                    sender.send(alert), timeout=self._config.send_timeout_seconds
                )
                if not sent:
                    logger.error(
                        f"Alert sender {type(sender).__name__} did not deliver: {alert.title}"
                    )
            except asyncio.TimeoutError:
                logger.error(f"Alert sender {type(sender).__name__} timed out: {alert.title}")
            except Exception as e:
                logger.error(f"Alert sender {type(sender).__name__} failed: {e}")

    def _is_duplicate(self, alert: Alert) -> bool:
        alert_key = f"{alert.title}:{alert.message[:100]}"
        now = self._clock.now()

        last_sent = self._recent_alerts.get(alert_key)
        min_interval = timedelta(minutes=self._config.repeat_critical_alert_minutes)
        if last_sent is not None and now - last_sent < min_interval:
            return True

        self._recent_alerts[alert_key] = now
        self._cleanup_recent_alerts(now)
        return False

    def _cleanup_recent_alerts(self, now: datetime) -> None:
        """Remove old entries from deduplication cache."""
        expiry = timedelta(hours=1)
        expired = [
            key for key, timestamp in self._recent_alerts.items()
            if now - timestamp > expiry
        ]
        for key in expired:
            del self._recent_alerts[key]


def build_alerting_service(config: AlertingConfig, clock: Optional[Clock] = None) -> AlertingService:
    """
    Build the alerting service with the senders the configuration enables.
    """
    senders: List[AlertSender] = []

    if config.telegram_bot_token and config.telegram_chat_id:
        senders.append(
            TelegramAlertSender(
                config.telegram_bot_token,
                config.telegram_chat_id,
                timeout_seconds=config.send_timeout_seconds,
            )
        )
    if config.webhook_url:
        senders.append(
            WebhookAlertSender(config.webhook_url, timeout_seconds=config.send_timeout_seconds)
        )
    if config.console_enabled:
        senders.append(ConsoleAlertSender())

    if config.enabled and not senders:
        logger.info("No notification sinks configured; deployment events are only logged")

    return AlertingService(config, senders, clock)
