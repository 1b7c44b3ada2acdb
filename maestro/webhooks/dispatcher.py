"""At-least-once webhook delivery with signing and exponential backoff."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Optional

import httpx

from maestro.app.config import Settings
from maestro.app.models import (
    Agent,
    AgentWebhookConfig,
    DeliveryAttempt,
    DeliveryResponse,
    DeliveryStatus,
    RetryPolicy,
    Task,
    WebhookDelivery,
    WebhookEvent,
    WebhookPayload,
    utcnow,
)
from maestro.orchestrator.prompt_strategies import PromptStrategyRegistry
from maestro.webhooks.delivery_log import DeliveryLog
from maestro.webhooks.registry import WebhookConfigRegistry
from maestro.webhooks.signing import (
    DELIVERY_ID_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    USER_AGENT,
    serialize_payload,
    signature_header,
)

logger = logging.getLogger(__name__)

# Legal status changes; terminal -> pending only through a manual retry
TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.RETRYING, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED},
    DeliveryStatus.RETRYING: {DeliveryStatus.RETRYING, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED},
    DeliveryStatus.DELIVERED: {DeliveryStatus.PENDING},
    DeliveryStatus.FAILED: {DeliveryStatus.PENDING},
}

PRIORITY_LABELS = {1: "critical", 2: "high", 3: "medium"}


def transition(delivery: WebhookDelivery, status: DeliveryStatus) -> None:
    """Move a delivery to a new status, rejecting illegal changes."""
    if status not in TRANSITIONS[delivery.status]:
        raise InvalidTransitionError(
            f"Delivery {delivery.id} cannot go from {delivery.status.value} to {status.value}"
        )
    delivery.status = status


class WebhookDispatcher:
    """
    Sends signed event payloads to agent endpoints.

    Each delivery runs the state machine pending -> retrying -> delivered |
    failed, suspending between attempts with the injected sleep so many
    deliveries can wait concurrently. Failures are recorded on the
    delivery, never raised.
    """

    def __init__(
        self,
        registry: WebhookConfigRegistry,
        log: Optional[DeliveryLog] = None,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
        strategies: Optional[PromptStrategyRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize dispatcher.

        Args:
            registry: Agent webhook configurations
            log: Delivery record store (default: new DeliveryLog)
            client: HTTP client; one is created and owned if omitted
            config: Default timeout and retry policy
            strategies: Prompt strategies for task.assigned payloads
            sleep: Suspends between attempts; injected for tests
            clock: Returns the current time; injected for tests
        """
        self.registry = registry
        self.log = log or DeliveryLog()
        self.config = config or Settings()
        self.strategies = strategies or PromptStrategyRegistry()
        self.sleep = sleep
        self.clock = clock

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()

        self.default_policy = RetryPolicy(
            max_attempts=self.config.webhook_max_attempts,
            backoff_multiplier=self.config.webhook_backoff_multiplier,
            initial_delay_ms=self.config.webhook_initial_delay_ms,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _policy(self, config: AgentWebhookConfig) -> RetryPolicy:
        return config.retry or self.default_policy

    async def deliver(
        self,
        config: AgentWebhookConfig,
        payload: WebhookPayload
    ) -> WebhookDelivery:
        """
        Create a delivery record and run it to a terminal state.

        Args:
            config: Target agent configuration
            payload: Event payload

        Returns:
            The delivery, delivered or failed
        """
        delivery = WebhookDelivery(
            agent_id=config.agent_id,
            event=payload.event,
            payload=payload,
            target_url=config.webhook_url,
            max_attempts=self._policy(config).max_attempts,
            created_at=self.clock(),
        )
        self.log.save(delivery)

        await self._run(delivery, config)
        return delivery

    async def _run(self, delivery: WebhookDelivery, config: AgentWebhookConfig) -> None:
        policy = self._policy(config)
        body = serialize_payload(delivery.payload)
        headers = {
            **config.headers,
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: signature_header(body, config.secret),
            EVENT_HEADER: delivery.event.value,
            DELIVERY_ID_HEADER: delivery.id,
        }
        timeout = config.timeout_seconds or self.config.webhook_timeout_seconds
        name = config.agent_name or config.agent_id

        try:
            while True:
                delivery.attempts += 1
                delivery.last_attempt_at = self.clock()

                response = await self._post(config.webhook_url, body, headers, timeout)
                delivery.response = response
                attempt = DeliveryAttempt(
                    attempt=delivery.attempts,
                    at=delivery.last_attempt_at,
                    status_code=response.status_code,
                    error=response.error,
                )
                delivery.history.append(attempt)

                if response.error is None:
                    transition(delivery, DeliveryStatus.DELIVERED)
                    delivery.delivered_at = self.clock()
                    delivery.next_retry_at = None
                    self.log.save(delivery)
                    logger.info(f"Delivered {delivery.event.value} to {name} ({delivery.id})")
                    return

                if delivery.attempts >= delivery.max_attempts:
                    transition(delivery, DeliveryStatus.FAILED)
                    delivery.next_retry_at = None
                    self.log.save(delivery)
                    logger.error(
                        f"Failed to deliver {delivery.event.value} to {name} after "
                        f"{delivery.attempts} attempts: {response.error}"
                    )
                    return

                delay = policy.delay_seconds(delivery.attempts)
                attempt.retry_delay_seconds = delay
                transition(delivery, DeliveryStatus.RETRYING)
                delivery.next_retry_at = self.clock() + timedelta(seconds=delay)
                self.log.save(delivery)
                logger.warning(
                    f"Delivery {delivery.id} failed (attempt {delivery.attempts}/"
                    f"{delivery.max_attempts}): {response.error}, retrying in {delay:.1f}s"
                )

                await self.sleep(delay)

        except asyncio.CancelledError:
            if not delivery.is_terminal:
                transition(delivery, DeliveryStatus.FAILED)
                delivery.next_retry_at = None
                delivery.response = DeliveryResponse(
                    status_code=delivery.response.status_code if delivery.response else 0,
                    error="Delivery cancelled",
                )
                self.log.save(delivery)
                logger.warning(f"Delivery {delivery.id} cancelled after {delivery.attempts} attempts")
            raise

    async def _post(
        self,
        url: str,
        body: bytes,
        headers: dict[str, str],
        timeout: float
    ) -> DeliveryResponse:
        try:
            response = await self.client.post(url, content=body, headers=headers, timeout=timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return DeliveryResponse(status_code=0, error=str(e) or e.__class__.__name__)
        except Exception as e:
            logger.exception(f"Unexpected error posting to {url}")
            return DeliveryResponse(status_code=0, error=f"{e.__class__.__name__}: {e}")

        try:
            response_body = response.json()
        except ValueError:
            response_body = response.text or None

        if response.is_success:
            return DeliveryResponse(status_code=response.status_code, body=response_body)

        return DeliveryResponse(
            status_code=response.status_code,
            body=response_body,
            error=f"HTTP {response.status_code}",
        )

    async def broadcast(self, payload: WebhookPayload) -> list[WebhookDelivery]:
        """Deliver to every enabled subscriber of the event, concurrently."""
        configs = self.registry.subscribers(payload.event)
        if not configs:
            logger.debug(f"No subscribers for {payload.event.value}")
            return []

        return list(await asyncio.gather(
            *(self.deliver(config, payload) for config in configs)
        ))

    async def retry(self, delivery_id: str) -> Optional[WebhookDelivery]:
        """
        Re-run a finished delivery with the agent's current configuration.

        Returns:
            The delivery after the new attempt sequence, or None if the
            delivery or the agent's configuration no longer exists

        Raises:
            InvalidTransitionError: If the delivery is still in flight
        """
        delivery = self.log.get(delivery_id)
        if delivery is None:
            return None

        config = self.registry.get(delivery.agent_id)
        if config is None:
            logger.warning(f"No webhook config for {delivery.agent_id}, cannot retry {delivery_id}")
            return None

        transition(delivery, DeliveryStatus.PENDING)
        delivery.attempts = 0
        delivery.max_attempts = self._policy(config).max_attempts
        delivery.target_url = config.webhook_url
        delivery.response = None
        delivery.delivered_at = None
        delivery.next_retry_at = None
        self.log.save(delivery)

        logger.info(f"Retrying delivery {delivery_id}")
        await self._run(delivery, config)
        return delivery

    def build_assignment_payload(self, task: Task, agent: Agent) -> WebhookPayload:
        request = self.strategies.build_request(task, agent.agent_type)
        return WebhookPayload(
            event=WebhookEvent.TASK_ASSIGNED,
            timestamp=self.clock(),
            data=request.model_dump(mode="json"),
            metadata={
                "source": "maestro",
                "triggered_by": "assignment",
                "agent_id": agent.id,
                "priority": PRIORITY_LABELS.get(task.priority, "low"),
            },
        )

    async def notify_assignment(self, task: Task, agent: Agent) -> Optional[WebhookDelivery]:
        """
        Send task.assigned to the chosen agent.

        Returns:
            The delivery, or None if the agent has no enabled subscription
        """
        config = self.registry.get(agent.id)
        if config is None or not config.enabled or WebhookEvent.TASK_ASSIGNED not in config.events:
            logger.debug(f"Agent {agent.id} has no task.assigned webhook, skipping notification")
            return None

        return await self.deliver(config, self.build_assignment_payload(task, agent))

    def prune_deliveries(self, days: Optional[int] = None) -> int:
        """Drop delivery records older than the retention window."""
        days = days if days is not None else self.config.webhook_delivery_retention_days
        return self.log.prune(days=days, now=self.clock())


class InvalidTransitionError(Exception):
    """Raised on an illegal delivery status change."""
    pass
