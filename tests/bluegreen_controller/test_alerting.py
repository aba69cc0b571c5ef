"""
Tests for deployment notifications.
"""

import asyncio
import io

import pytest

from bluegreen_controller.alerting import (
    AlertingService,
    AlertPriority,
    AlertSender,
    ConsoleAlertSender,
    DeploymentEvent,
    TelegramAlertSender,
    WebhookAlertSender,
    build_alerting_service,
    format_deployment_alert,
)
from bluegreen_controller.config import AlertingConfig
from bluegreen_controller.types import DeploymentState

from tests.bluegreen_controller.factories import RecordingAlertSender


class FailingAlertSender(AlertSender):

    async def send(self, alert):
        raise ConnectionError("sink down")


class SlowAlertSender(AlertSender):

    def __init__(self):
        self.release = asyncio.Event()
        self.sent = []

    async def send(self, alert):
        await self.release.wait()
        self.sent.append(alert)
        return True


def _event(state=DeploymentState.ROLLED_BACK, cause="error_rate", critical=False):
    return DeploymentEvent(
        deployment_id="dep-1",
        service_name="api",
        state=state,
        cause=cause,
        green_revision="api:v2",
        critical=critical,
    )


class TestFormatting:

    @pytest.mark.parametrize(
        "state,priority,marker",
        [
            (DeploymentState.PROMOTED, AlertPriority.LOW, "PROMOTED"),
            (DeploymentState.ROLLED_BACK, AlertPriority.HIGH, "ROLLED BACK"),
            (DeploymentState.FAILED, AlertPriority.HIGH, "FAILED"),
            (DeploymentState.ABORTED, AlertPriority.HIGH, "ABORTED"),
        ],
    )
    def test_terminal_states(self, state, priority, marker):
        alert = format_deployment_alert(_event(state=state))

        assert alert.priority == priority
        assert marker in alert.title
        assert "api" in alert.title
        assert "dep-1" in alert.message

    def test_critical_event(self):
        alert = format_deployment_alert(
            _event(state=DeploymentState.ROLLING_BACK, critical=True)
        )

        assert alert.priority == AlertPriority.CRITICAL
        assert "ROLLBACK STUCK" in alert.title

    def test_cause_is_included(self):
        alert = format_deployment_alert(_event(cause="evaluation_timeout: error_rate"))

        assert "evaluation_timeout: error_rate" in alert.message
        assert alert.details["cause"] == "evaluation_timeout: error_rate"


class TestAlertingService:

    @pytest.mark.asyncio
    async def test_emit_does_not_wait_for_senders(self, clock):
        slow = SlowAlertSender()
        service = AlertingService(AlertingConfig(), [slow], clock)

        task = service.emit(_event())

        assert task is not None
        assert slow.sent == []

        slow.release.set()
        await service.drain()
        assert len(slow.sent) == 1

    @pytest.mark.asyncio
    async def test_failing_sender_does_not_stop_others(self, clock):
        recording = RecordingAlertSender()
        service = AlertingService(AlertingConfig(), [FailingAlertSender(), recording], clock)

        service.emit(_event())
        await service.drain()

        assert len(recording.alerts) == 1

    @pytest.mark.asyncio
    async def test_duplicates_suppressed_within_window(self, clock):
        recording = RecordingAlertSender()
        service = AlertingService(
            AlertingConfig(repeat_critical_alert_minutes=5), [recording], clock
        )
        event = _event(critical=True)

        assert service.emit(event) is not None
        assert service.emit(event) is None

        clock.advance(minutes=5)
        assert service.emit(event) is not None

        await service.drain()
        assert len(recording.alerts) == 2

    @pytest.mark.asyncio
    async def test_disabled_sends_nothing(self, clock):
        recording = RecordingAlertSender()
        service = AlertingService(AlertingConfig(enabled=False), [recording], clock)

        assert service.emit(_event()) is None
        await service.drain()
        assert recording.alerts == []

    @pytest.mark.asyncio
    async def test_no_senders(self, clock):
        service = AlertingService(AlertingConfig(), [], clock)

        assert service.emit(_event()) is None

    def test_add_sender(self, clock):
        service = AlertingService(AlertingConfig(), None, clock)
        service.add_sender(ConsoleAlertSender())

        assert len(service.senders) == 1


class TestBuildAlertingService:

    def test_senders_follow_configuration(self):
        config = AlertingConfig(
            webhook_url="https://hooks.example.com/deployments",
            telegram_bot_token="123:abc",
            telegram_chat_id="-100",
            console_enabled=True,
        )

        service = build_alerting_service(config)

        kinds = [type(sender) for sender in service.senders]
        assert kinds == [TelegramAlertSender, WebhookAlertSender, ConsoleAlertSender]

    def test_telegram_needs_chat_id(self):
        service = build_alerting_service(AlertingConfig(telegram_bot_token="123:abc"))

        assert service.senders == []


class TestSenders:

    def test_telegram_message_is_escaped(self):
        sender = TelegramAlertSender("123:abc", "-100")
        alert = format_deployment_alert(_event(cause="latency <2s> & errors"))

        text = sender.render(alert)

        assert "latency &lt;2s&gt; &amp; errors" in text
        assert "<code>api:v2</code>" in text

    def test_telegram_message_is_truncated(self):
        sender = TelegramAlertSender("123:abc", "-100")
        alert = format_deployment_alert(_event(cause="x" * 5000))

        assert len(sender.render(alert)) == TelegramAlertSender.MESSAGE_LIMIT

    @pytest.mark.asyncio
    async def test_console_line(self):
        stream = io.StringIO()
        sender = ConsoleAlertSender(stream)

        assert await sender.send(format_deployment_alert(_event())) is True

        line = stream.getvalue().strip()
        assert line.startswith("[HIGH]")
        assert "deployment=dep-1 state=RolledBack cause=error_rate" in line
