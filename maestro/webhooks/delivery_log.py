"""Retained webhook delivery records and statistics."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from maestro.app.models import DeliveryStatus, WebhookDelivery

logger = logging.getLogger(__name__)


class AgentDeliveryCounts(BaseModel):
    delivered: int = 0
    failed: int = 0


class DeliveryStats(BaseModel):
    total: int = 0
    delivered: int = 0
    failed: int = 0
    pending: int = 0  # pending or retrying
    success_rate: float = 0.0  # percent
    by_event: dict[str, int] = {}
    by_agent: dict[str, AgentDeliveryCounts] = {}


class DeliveryLog:
    """
    Delivery records with their full attempt history.

    Records are stored as copies; save() after every state change keeps
    the log consistent with the dispatcher.
    """

    def __init__(self):
        self._deliveries: dict[str, WebhookDelivery] = {}

    def save(self, delivery: WebhookDelivery) -> None:
        self._deliveries[delivery.id] = delivery.model_copy(deep=True)

    def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        delivery = self._deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    def _newest_first(self) -> list[WebhookDelivery]:
        return sorted(self._deliveries.values(), key=lambda d: d.created_at, reverse=True)

    def for_agent(self, agent_id: str, limit: Optional[int] = None) -> list[WebhookDelivery]:
        deliveries = [d for d in self._newest_first() if d.agent_id == agent_id]
        if limit is not None:
            deliveries = deliveries[:limit]
        return [d.model_copy(deep=True) for d in deliveries]

    def recent(self, limit: int = 50) -> list[WebhookDelivery]:
        return [d.model_copy(deep=True) for d in self._newest_first()[:limit]]

    def stats(self) -> DeliveryStats:
        stats = DeliveryStats(total=len(self._deliveries))

        for delivery in self._deliveries.values():
            if delivery.status == DeliveryStatus.DELIVERED:
                stats.delivered += 1
            elif delivery.status == DeliveryStatus.FAILED:
                stats.failed += 1
            else:
                stats.pending += 1

            event = delivery.event.value
            stats.by_event[event] = stats.by_event.get(event, 0) + 1

            counts = stats.by_agent.setdefault(delivery.agent_id, AgentDeliveryCounts())
            if delivery.status == DeliveryStatus.DELIVERED:
                counts.delivered += 1
            elif delivery.status == DeliveryStatus.FAILED:
                counts.failed += 1

        if stats.total:
            stats.success_rate = stats.delivered / stats.total * 100
        return stats

    def prune(self, days: int, now: datetime) -> int:
        """
        Drop deliveries created more than `days` ago.

        Returns:
            Number of records removed
        """
        cutoff = now - timedelta(days=days)
        stale = [d.id for d in self._deliveries.values() if d.created_at <= cutoff]
        for delivery_id in stale:
            del self._deliveries[delivery_id]

        if stale:
            logger.info(f"Cleared {len(stale)} old webhook deliveries")
        return len(stale)
