"""Rate-limited alert generation and alert history management."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from maestro.app.config import Settings
from maestro.app.models import Alert, AlertSeverity, AlertSummary, Task, TaskStatus, utcnow
from maestro.orchestrator.bottlenecks import Bottleneck, BottleneckDetector
from maestro.orchestrator.health_monitor import HealthCheck, HealthMonitor, SystemHealthStatus
from maestro.storage import StateStore

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Stable alert keys; at most one alert per key per rate-limit window."""
    ALL_AGENTS_OFFLINE = "all_agents_offline"
    CRITICAL_TASK_BLOCKED = "critical_task_blocked"
    HIGH_ERROR_RATE = "high_error_rate"
    BOTTLENECK = "bottleneck"
    MULTIPLE_STUCK_AGENTS = "multiple_stuck_agents"
    SYSTEM_HEALTH_CRITICAL = "system_health_critical"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count != 1 else ''}"


class AlertGenerator:
    """
    Evaluates trigger rules against health and backlog signals.

    Each rule is independent: a failing rule is logged and skipped. Alert
    history lives in the state store; the rate-limit check and the append
    are not atomic, so concurrent generators may rarely emit a duplicate.
    """

    def __init__(
        self,
        store: StateStore,
        health_monitor: HealthMonitor,
        bottleneck_detector: BottleneckDetector,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.health_monitor = health_monitor
        self.bottleneck_detector = bottleneck_detector
        self.config = config or Settings()
        self.clock = clock

    async def generate_alerts(
        self,
        health: Optional[HealthCheck] = None,
        bottlenecks: Optional[list[Bottleneck]] = None
    ) -> list[Alert]:
        """
        Run every rule and record the alerts that pass rate limiting.

        Args:
            health: Health snapshot already taken this cycle (computed if omitted)
            bottlenecks: Bottlenecks already detected this cycle (computed if omitted)

        Returns:
            Alerts emitted by this call
        """
        now = self.clock()
        if health is None:
            health = await self.health_monitor.run_health_check()
        if bottlenecks is None:
            bottlenecks = await self.bottleneck_detector.detect_bottlenecks()

        try:
            tasks = await self.store.list_tasks()
        except Exception as e:
            logger.error(f"Alert rules could not load tasks: {e}")
            tasks = []

        rules = [
            lambda: self._all_agents_offline(health, now),
            lambda: self._critical_tasks_blocked(tasks, now),
            lambda: self._high_error_rate(tasks, now),
            lambda: self._bottlenecks(bottlenecks, now),
            lambda: self._multiple_stuck_agents(health, now),
            lambda: self._system_health_critical(health, now),
        ]

        emitted = []
        for rule in rules:
            try:
                alert = rule()
            except Exception as e:
                logger.error(f"Alert rule failed: {e}", exc_info=True)
                continue

            if alert and await self.emit(alert):
                emitted.append(alert)

        return emitted

    def _all_agents_offline(self, health: HealthCheck, now: datetime) -> Optional[Alert]:
        total = health.system_health.total_agents
        if total == 0 or len(health.offline_agents) != total:
            return None

        return Alert(
            severity=AlertSeverity.CRITICAL,
            type=AlertType.ALL_AGENTS_OFFLINE.value,
            message="All agents are offline. System is not operational.",
            agent_ids=[a.id for a in health.offline_agents],
            action="Restart agent manager or check infrastructure",
            timestamp=now,
        )

    def _critical_tasks_blocked(self, tasks: list[Task], now: datetime) -> Optional[Alert]:
        cutoff = now - timedelta(hours=self.config.blocked_task_hours)
        blocked = [
            task for task in tasks
            if task.status == TaskStatus.BLOCKED
            and task.priority <= 2
            and task.started_at is not None
            and task.started_at < cutoff
        ]
        if not blocked:
            return None

        return Alert(
            severity=AlertSeverity.HIGH,
            type=AlertType.CRITICAL_TASK_BLOCKED.value,
            message=(
                f"{_plural(len(blocked), 'critical task')} blocked "
                f">{self.config.blocked_task_hours}h"
            ),
            task_ids=[task.id for task in blocked],
            action="Review blocked tasks and provide guidance",
            timestamp=now,
        )

    def _high_error_rate(self, tasks: list[Task], now: datetime) -> Optional[Alert]:
        cutoff = now - timedelta(hours=24)
        recent = [task for task in tasks if task.created_at > cutoff]
        if len(recent) <= self.config.error_rate_min_sample:
            return None

        failed = sum(1 for task in recent if task.status == TaskStatus.BLOCKED)
        error_rate = failed / len(recent)
        if error_rate <= self.config.error_rate_threshold:
            return None

        return Alert(
            severity=AlertSeverity.MEDIUM,
            type=AlertType.HIGH_ERROR_RATE.value,
            message=f"Error rate at {round(error_rate * 100)}%",
            details={"failed_count": failed, "total_count": len(recent)},
            action="Review error logs and fix common issues",
            timestamp=now,
        )

    def _bottlenecks(self, bottlenecks: list[Bottleneck], now: datetime) -> Optional[Alert]:
        if not bottlenecks:
            return None

        return Alert(
            severity=AlertSeverity.LOW,
            type=AlertType.BOTTLENECK.value,
            message=f"{_plural(len(bottlenecks), 'agent type')} overloaded",
            details={"bottlenecks": [b.model_dump(mode="json") for b in bottlenecks]},
            action="Consider spawning additional agents",
            timestamp=now,
        )

    def _multiple_stuck_agents(self, health: HealthCheck, now: datetime) -> Optional[Alert]:
        stuck = health.stuck_agents
        if len(stuck) < self.config.stuck_agents_alert_threshold:
            return None

        return Alert(
            severity=AlertSeverity.HIGH,
            type=AlertType.MULTIPLE_STUCK_AGENTS.value,
            message=f"{len(stuck)} agents stuck on tasks",
            agent_ids=[a.id for a in stuck],
            task_ids=[a.current_task_id for a in stuck if a.current_task_id],
            action="Review stuck tasks and consider reassigning",
            timestamp=now,
        )

    def _system_health_critical(self, health: HealthCheck, now: datetime) -> Optional[Alert]:
        if health.system_health.status != SystemHealthStatus.CRITICAL:
            return None

        return Alert(
            severity=AlertSeverity.CRITICAL,
            type=AlertType.SYSTEM_HEALTH_CRITICAL.value,
            message=f"System health critical: {health.system_health.health_percentage}%",
            action="Investigate agent failures and restore system health",
            timestamp=now,
        )

    def should_send(self, alert: Alert, history: list[Alert]) -> bool:
        """False when an alert of the same type was recorded inside the rate-limit window."""
        window = timedelta(minutes=self.config.alert_rate_limit_minutes)
        return not any(
            previous.type == alert.type and alert.timestamp - previous.timestamp < window
            for previous in history
        )

    async def emit(self, alert: Alert) -> bool:
        """
        Record an alert unless rate limited.

        Returns:
            True if the alert was appended to history
        """
        try:
            history = await self.store.list_alerts()
            if not self.should_send(alert, history):
                logger.debug(f"Alert {alert.type} suppressed by rate limit")
                return False
            await self.store.append_alert(alert)
        except Exception as e:
            logger.error(f"Failed to record alert {alert.type}: {e}")
            return False

        logger.warning(f"[{alert.severity.value.upper()}] {alert.type}: {alert.message}")
        return True

    async def get_alerts(self) -> list[Alert]:
        try:
            return await self.store.list_alerts()
        except Exception as e:
            logger.error(f"Could not load alerts: {e}")
            return []

    async def get_recent_alerts(self, hours: float = 24) -> list[Alert]:
        cutoff = self.clock() - timedelta(hours=hours)
        return [a for a in await self.get_alerts() if a.timestamp > cutoff]

    async def alerts_by_severity(self, severity: AlertSeverity) -> list[Alert]:
        return [a for a in await self.get_alerts() if a.severity == severity]

    async def alerts_by_type(self, alert_type: str) -> list[Alert]:
        return [a for a in await self.get_alerts() if a.type == alert_type]

    async def get_alert_summary(self) -> AlertSummary:
        alerts = await self.get_alerts()
        cutoff = self.clock() - timedelta(hours=24)

        summary = AlertSummary(
            total=len(alerts),
            last_24h=sum(1 for a in alerts if a.timestamp > cutoff),
        )
        for alert in alerts:
            field = alert.severity.value
            setattr(summary, field, getattr(summary, field) + 1)
        return summary

    async def has_critical_alerts(self) -> bool:
        """Any critical alert in the last hour."""
        return any(
            a.severity == AlertSeverity.CRITICAL
            for a in await self.get_recent_alerts(hours=1)
        )

    async def dismiss_alert(self, alert_id: str) -> bool:
        alerts = await self.get_alerts()
        remaining = [a for a in alerts if a.id != alert_id]
        if len(remaining) == len(alerts):
            return False

        try:
            await self.store.replace_alerts(remaining)
        except Exception as e:
            logger.error(f"Failed to dismiss alert {alert_id}: {e}")
            return False
        return True

    async def prune_alerts(self, days: Optional[int] = None) -> int:
        """
        Drop alerts older than the retention window.

        Returns:
            Number of alerts removed
        """
        days = days if days is not None else self.config.alert_retention_days
        cutoff = self.clock() - timedelta(days=days)

        alerts = await self.get_alerts()
        kept = [a for a in alerts if a.timestamp > cutoff]
        if len(kept) == len(alerts):
            return 0

        try:
            await self.store.replace_alerts(kept)
        except Exception as e:
            logger.error(f"Failed to prune alerts: {e}")
            return 0

        removed = len(alerts) - len(kept)
        logger.info(f"Pruned {removed} alerts older than {days} days")
        return removed

    async def clear_alerts(self) -> None:
        try:
            await self.store.replace_alerts([])
        except Exception as e:
            logger.error(f"Failed to clear alerts: {e}")
