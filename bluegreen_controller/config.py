"""
Blue/Green Deployment Controller - Configuration.

============================================================
PURPOSE
============================================================
All tunables of the controller in one place.

- Traffic shifter retry budget
- Health polling cadence and fail-closed timeout
- Rollback backoff and grace period
- Provisioning timeout
- Notification sinks
- Persistence, routing and metrics backends
- HTTP API

Values come from dataclass defaults, overridden by
environment variables (a `.env` file is honoured).

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .types import AlarmRule, Comparator


logger = logging.getLogger(__name__)


# ============================================================
# TRAFFIC SHIFTER
# ============================================================

@dataclass
class ShifterConfig:
    """
    Retry budget for applying and confirming a traffic split.

    SAFETY: Bounded attempts with exponential backoff.
    """

    max_attempts: int = 5
    """Maximum apply+confirm attempts per step."""

    initial_delay_seconds: float = 1.0
    """Delay before the second attempt."""

    max_delay_seconds: float = 30.0
    """Maximum delay between attempts."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    request_timeout_seconds: float = 10.0
    """Timeout for a single routing backend call."""


# ============================================================
# HEALTH EVALUATION
# ============================================================

@dataclass
class HealthConfig:
    """
    Health polling configuration.
    """

    poll_interval_seconds: float = 10.0
    """How often the evaluator runs while observing a step or bake."""

    evaluation_timeout_seconds: float = 120.0
    """
    Default fail-closed timeout.
    A metric source that cannot answer for longer than this
    produces an unhealthy verdict.
    """

    query_timeout_seconds: float = 10.0
    """Timeout for a single metric query."""


# ============================================================
# ROLLBACK
# ============================================================

@dataclass
class RollbackConfig:
    """
    Rollback retry behaviour.

    Rollback never gives up: attempts are unbounded, only the
    interval between them is capped.
    """

    initial_delay_seconds: float = 1.0
    """Delay after the first failed reversal."""

    max_interval_seconds: float = 30.0
    """Maximum delay between reversal attempts."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    grace_period_seconds: float = 300.0
    """Reversal time after which a CRITICAL alert is sent."""


# ============================================================
# PROVISIONING
# ============================================================

@dataclass
class ProvisioningConfig:
    """
    Green destination readiness check.
    """

    timeout_seconds: float = 600.0
    """Time allowed for green to become reachable before Failed."""

    poll_interval_seconds: float = 5.0
    """Interval between reachability checks."""


# ============================================================
# ALERTING
# ============================================================

@dataclass
class AlertingConfig:
    """
    Configuration for deployment notifications.
    """

    enabled: bool = True
    """Whether notifications are sent at all."""

    webhook_url: Optional[str] = None
    """Generic JSON webhook (chat integrations, incident tools)."""

    telegram_bot_token: Optional[str] = None
    """Telegram bot token."""

    telegram_chat_id: Optional[str] = None
    """Telegram chat to post to."""

    console_enabled: bool = False
    """Print notifications to stdout (development)."""

    send_timeout_seconds: float = 10.0
    """Timeout for a single delivery attempt."""

    repeat_critical_alert_minutes: int = 5
    """Identical alerts inside this window are suppressed."""


# ============================================================
# BACKENDS
# ============================================================

@dataclass
class DatabaseConfig:
    """Deployment registry persistence."""

    url: Optional[str] = None
    """SQLAlchemy URL. None = DATABASE_URL or local SQLite."""

    echo: bool = False
    """Log SQL statements."""


@dataclass
class RoutingConfig:
    """Traffic routing backend."""

    backend: str = "memory"
    """'memory' or 'http'."""

    base_url: Optional[str] = None
    """Control-plane base URL for the http backend."""

    auth_token: Optional[str] = None
    """Bearer token for the http backend."""


@dataclass
class MetricsConfig:
    """Metric source adapter."""

    backend: str = "memory"
    """'memory' or 'prometheus'."""

    prometheus_url: Optional[str] = None
    """Prometheus base URL, e.g. http://prometheus:9090."""


@dataclass
class ApiConfig:
    """HTTP API server."""

    host: str = "0.0.0.0"
    port: int = 8000


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ControllerConfig:
    """
    Master configuration for the deployment controller.
    """

    shifter: ShifterConfig = field(default_factory=ShifterConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    rollback: RollbackConfig = field(default_factory=RollbackConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    log_level: str = "INFO"
    log_json: bool = False

    internal_error_backoff_seconds: float = 5.0
    """Pause before a supervisor retries after an internal error it could not record."""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging (secrets omitted)."""
        return {
            "shifter": {
                "max_attempts": self.shifter.max_attempts,
                "initial_delay_seconds": self.shifter.initial_delay_seconds,
                "max_delay_seconds": self.shifter.max_delay_seconds,
            },
            "health": {
                "poll_interval_seconds": self.health.poll_interval_seconds,
                "evaluation_timeout_seconds": self.health.evaluation_timeout_seconds,
            },
            "rollback": {
                "max_interval_seconds": self.rollback.max_interval_seconds,
                "grace_period_seconds": self.rollback.grace_period_seconds,
            },
            "provisioning": {
                "timeout_seconds": self.provisioning.timeout_seconds,
            },
            "routing": {"backend": self.routing.backend},
            "metrics": {"backend": self.metrics.backend},
            "alerting": {
                "enabled": self.alerting.enabled,
                "webhook": bool(self.alerting.webhook_url),
                "telegram": bool(self.alerting.telegram_bot_token),
            },
        }


# ============================================================
# DEFAULT ALARM RULES
# ============================================================

def default_alarm_rules() -> List[AlarmRule]:
    """
    Alarm rules used when a deployment request names none.

    Mirrors the service's Prometheus alerting: 5xx ratio, p95
    latency, host CPU and scrape availability.
    """
    return [
        AlarmRule(
            name="error_rate",
            metric_query=(
                'sum(rate(http_requests_total{status_code=~"5.."}[{window}]))'
                " / sum(rate(http_requests_total[{window}]))"
            ),
            comparator=Comparator.GT,
            threshold=0.05,
            evaluation_window_seconds=300.0,
            sustained_for_seconds=60.0,
        ),
        AlarmRule(
            name="latency_p95",
            metric_query=(
                "histogram_quantile(0.95, "
                "sum(rate(http_request_duration_seconds_bucket[{window}])) by (le))"
            ),
            comparator=Comparator.GT,
            threshold=2.0,
            evaluation_window_seconds=300.0,
            sustained_for_seconds=120.0,
        ),
        AlarmRule(
            name="cpu_percent",
            metric_query=(
                '100 - (avg(rate(node_cpu_seconds_total{mode="idle"}[{window}])) * 100)'
            ),
            comparator=Comparator.GT,
            threshold=80.0,
            evaluation_window_seconds=300.0,
            sustained_for_seconds=300.0,
        ),
        AlarmRule(
            name="backend_up",
            metric_query="min(up)",
            comparator=Comparator.LT,
            threshold=1.0,
            evaluation_window_seconds=60.0,
            sustained_for_seconds=30.0,
        ),
    ]


# ============================================================
# PRESET FACTORIES
# ============================================================

def get_default_config() -> ControllerConfig:
    """
    Get default configuration.

    Conservative defaults suitable for production.
    """
    return ControllerConfig()


def get_testing_config() -> ControllerConfig:
    """
    Get testing configuration.

    Tiny delays, in-memory backends, no notifications.
    NOT FOR PRODUCTION.
    """
    config = ControllerConfig()

    config.shifter.max_attempts = 3
    config.shifter.initial_delay_seconds = 0.01
    config.shifter.max_delay_seconds = 0.05
    config.shifter.request_timeout_seconds = 1.0

    config.health.poll_interval_seconds = 10.0
    config.health.evaluation_timeout_seconds = 120.0
    config.health.query_timeout_seconds = 1.0

    config.rollback.initial_delay_seconds = 0.01
    config.rollback.max_interval_seconds = 0.05
    config.rollback.grace_period_seconds = 60.0

    config.provisioning.timeout_seconds = 60.0
    config.provisioning.poll_interval_seconds = 5.0

    config.alerting.enabled = False

    config.database.url = "sqlite://"

    config.internal_error_backoff_seconds = 0.01

    return config


# ============================================================
# ENVIRONMENT LOADING
# ============================================================

def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={value!r}, using {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(load_dotenv_file: bool = True) -> ControllerConfig:
    """
    Load configuration from environment variables.

    Args:
        load_dotenv_file: Whether to read a `.env` file first

    Returns:
        ControllerConfig instance
    """
    if load_dotenv_file:
        load_dotenv()

    config = get_default_config()

    # Shifter
    config.shifter.max_attempts = _env_int(
        "BLUEGREEN_SHIFT_MAX_ATTEMPTS", config.shifter.max_attempts
    )
    config.shifter.initial_delay_seconds = _env_float(
        "BLUEGREEN_SHIFT_INITIAL_DELAY_SECONDS", config.shifter.initial_delay_seconds
    )
    config.shifter.max_delay_seconds = _env_float(
        "BLUEGREEN_SHIFT_MAX_DELAY_SECONDS", config.shifter.max_delay_seconds
    )

    # Health
    config.health.poll_interval_seconds = _env_float(
        "BLUEGREEN_HEALTH_POLL_INTERVAL_SECONDS", config.health.poll_interval_seconds
    )
    config.health.evaluation_timeout_seconds = _env_float(
        "BLUEGREEN_EVALUATION_TIMEOUT_SECONDS", config.health.evaluation_timeout_seconds
    )
    config.health.query_timeout_seconds = _env_float(
        "BLUEGREEN_QUERY_TIMEOUT_SECONDS", config.health.query_timeout_seconds
    )

    # Rollback
    config.rollback.max_interval_seconds = _env_float(
        "BLUEGREEN_ROLLBACK_MAX_INTERVAL_SECONDS", config.rollback.max_interval_seconds
    )
    config.rollback.grace_period_seconds = _env_float(
        "BLUEGREEN_ROLLBACK_GRACE_PERIOD_SECONDS", config.rollback.grace_period_seconds
    )

    # Provisioning
    config.provisioning.timeout_seconds = _env_float(
        "BLUEGREEN_PROVISIONING_TIMEOUT_SECONDS", config.provisioning.timeout_seconds
    )
    config.provisioning.poll_interval_seconds = _env_float(
        "BLUEGREEN_PROVISIONING_POLL_INTERVAL_SECONDS",
        config.provisioning.poll_interval_seconds,
    )

    # Alerting
    config.alerting.enabled = _env_bool("BLUEGREEN_ALERTS_ENABLED", config.alerting.enabled)
    config.alerting.webhook_url = _env_str("BLUEGREEN_WEBHOOK_URL", None)
    config.alerting.telegram_bot_token = _env_str("TELEGRAM_BOT_TOKEN", None)
    config.alerting.telegram_chat_id = _env_str("TELEGRAM_CHAT_ID", None)
    config.alerting.console_enabled = _env_bool(
        "BLUEGREEN_CONSOLE_ALERTS", config.alerting.console_enabled
    )

    # Backends
    config.database.url = _env_str(
        "BLUEGREEN_DATABASE_URL", _env_str("DATABASE_URL", None)
    )
    config.database.echo = _env_bool("BLUEGREEN_DATABASE_ECHO", False)
    config.routing.backend = _env_str("BLUEGREEN_ROUTING_BACKEND", config.routing.backend)
    config.routing.base_url = _env_str("BLUEGREEN_ROUTING_URL", None)
    config.routing.auth_token = _env_str("BLUEGREEN_ROUTING_TOKEN", None)
    config.metrics.backend = _env_str("BLUEGREEN_METRICS_BACKEND", config.metrics.backend)
    config.metrics.prometheus_url = _env_str("PROMETHEUS_URL", None)
    if config.metrics.prometheus_url and config.metrics.backend == "memory":
        config.metrics.backend = "prometheus"

    # API
    config.api.host = _env_str("BLUEGREEN_HOST", config.api.host)
    config.api.port = _env_int("PORT", _env_int("BLUEGREEN_PORT", config.api.port))

    # Logging
    config.log_level = _env_str("LOG_LEVEL", config.log_level).upper()
    config.log_json = _env_bool("BLUEGREEN_LOG_JSON", config.log_json)

    return config
