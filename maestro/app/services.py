"""Explicit wiring of the store, orchestration components and scheduler."""

import logging
from typing import Optional

import httpx
import redis.asyncio as redis

from maestro.app.config import Settings
from maestro.locking import RedisLock
from maestro.orchestrator.agent_registry import AgentRegistry
from maestro.orchestrator.alerts import AlertGenerator
from maestro.orchestrator.assignment import AssignmentEngine
from maestro.orchestrator.bottlenecks import BottleneckDetector
from maestro.orchestrator.classifier import KeywordClassifier
from maestro.orchestrator.dependency_graph import DependencyAnalyzer
from maestro.orchestrator.health_monitor import HealthMonitor
from maestro.orchestrator.supervisor import OrchestrationScheduler, Supervisor
from maestro.storage import InMemoryStore, RedisStore, StateStore
from maestro.webhooks import DeliveryLog, WebhookConfigRegistry, WebhookDispatcher

logger = logging.getLogger(__name__)


class Services:
    """Every long-lived component of one application instance."""

    def __init__(
        self,
        config: Settings,
        store: StateStore,
        lock_manager: Optional[RedisLock] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Build components around a store.

        Args:
            config: Application settings
            store: State store shared by all components
            lock_manager: Assignment commit lock (Redis deployments)
            http_client: Client for webhook delivery (created if omitted)
        """
        self.config = config
        self.store = store

        classifier = KeywordClassifier()
        self.analyzer = DependencyAnalyzer(classifier)
        self.agents = AgentRegistry(store, config)
        self.health_monitor = HealthMonitor(store, config)
        self.bottleneck_detector = BottleneckDetector(store, config, classifier)
        self.alert_generator = AlertGenerator(
            store, self.health_monitor, self.bottleneck_detector, config
        )
        self.assignment_engine = AssignmentEngine(
            store, config, classifier, lock_manager=lock_manager
        )

        self.webhook_configs = WebhookConfigRegistry()
        self.deliveries = DeliveryLog()
        self.dispatcher = WebhookDispatcher(
            self.webhook_configs,
            self.deliveries,
            client=http_client,
            config=config,
        )

        self.supervisor = Supervisor(
            store,
            self.health_monitor,
            self.bottleneck_detector,
            self.alert_generator,
            self.assignment_engine,
            analyzer=self.analyzer,
            dispatcher=self.dispatcher,
            registry=self.agents,
        )
        self.scheduler = OrchestrationScheduler(self.supervisor, config)

    async def close(self) -> None:
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.dispatcher.aclose()
        await self.store.close()


def build_services(config: Optional[Settings] = None) -> Services:
    """
    Create services for the configured store backend.

    Redis deployments share one client between the store and the
    assignment lock.
    """
    config = config or Settings()

    if config.store_backend == "redis":
        client = redis.from_url(config.redis_url)
        logger.info(f"Using Redis state store at {config.redis_url}")
        return Services(config, RedisStore(client), lock_manager=RedisLock(client))

    if config.store_backend != "memory":
        raise ValueError(f"Unknown store backend: {config.store_backend}")

    logger.info("Using in-memory state store")
    return Services(config, InMemoryStore())
