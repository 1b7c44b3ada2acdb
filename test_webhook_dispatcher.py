"""Tests for webhook signing, delivery retries and the delivery log."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pydantic import ValidationError

from maestro.app.config import Settings
from maestro.app.models import (
    Agent,
    AgentType,
    AgentWebhookConfig,
    DeliveryStatus,
    RetryPolicy,
    Task,
    WebhookDelivery,
    WebhookEvent,
    WebhookPayload,
)
from maestro.webhooks import (
    DeliveryLog,
    InvalidTransitionError,
    WebhookConfigRegistry,
    WebhookDispatcher,
    sign_payload,
    verify_signature,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
SECRET = "s3cret"


def agent_config(agent_id="be-1", **kwargs):
    return AgentWebhookConfig(
        agent_id=agent_id,
        webhook_url=f"http://agents.test/{agent_id}/hook",
        secret=SECRET,
        **kwargs,
    )


def payload(event=WebhookEvent.TASK_ASSIGNED):
    return WebhookPayload(event=event, timestamp=NOW, data={"task_id": "t-1"})


class Endpoint:
    """Scripted agent endpoint: replies with the given status codes in order, then 200."""

    def __init__(self, *statuses, error=None):
        self.statuses = list(statuses)
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error:
            raise self.error
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"received": status == 200})


class Harness:
    def __init__(self, endpoint, configs=()):
        self.endpoint = endpoint
        self.delays: list[float] = []
        self.registry = WebhookConfigRegistry(list(configs))
        self.log = DeliveryLog()
        self.dispatcher = WebhookDispatcher(
            self.registry,
            self.log,
            client=httpx.AsyncClient(transport=httpx.MockTransport(endpoint)),
            config=Settings(),
            sleep=self.sleep,
            clock=lambda: NOW,
        )

    async def sleep(self, seconds):
        self.delays.append(seconds)


class TestSigning:

    def test_round_trip(self):
        body = b'{"event": "task.assigned"}'
        header = f"sha256={sign_payload(body, SECRET)}"

        assert verify_signature(body, header, SECRET)
        assert not verify_signature(body, header, "other-secret")
        assert not verify_signature(body + b" ", header, SECRET)

    def test_malformed_header(self):
        body = b"{}"
        assert not verify_signature(body, None, SECRET)
        assert not verify_signature(body, sign_payload(body, SECRET), SECRET)


class TestDelivery:

    def test_retries_until_delivered(self):
        harness = Harness(Endpoint(500, 502))

        delivery = asyncio.run(harness.dispatcher.deliver(agent_config(), payload()))

        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.attempts == 3
        assert harness.delays == [1.0, 2.0]
        assert [a.status_code for a in delivery.history] == [500, 502, 200]
        assert delivery.history[0].retry_delay_seconds == 1.0
        assert delivery.response.body == {"received": True}
        assert delivery.delivered_at == NOW
        assert harness.log.get(delivery.id).status == DeliveryStatus.DELIVERED

    def test_gives_up_after_max_attempts(self):
        harness = Harness(Endpoint(503, 503, 503, 503))

        delivery = asyncio.run(harness.dispatcher.deliver(agent_config(), payload()))

        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 3
        assert delivery.response.error == "HTTP 503"
        assert harness.delays == [1.0, 2.0]
        assert len(harness.endpoint.requests) == 3

    def test_connection_error(self):
        harness = Harness(Endpoint(error=httpx.ConnectError("connection refused")))
        config = agent_config(retry=RetryPolicy(max_attempts=2, initial_delay_ms=500))

        delivery = asyncio.run(harness.dispatcher.deliver(config, payload()))

        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.response.status_code == 0
        assert delivery.response.error == "connection refused"
        assert harness.delays == [0.5]

    def test_unexpected_client_error_recorded_as_attempt(self):
        endpoint = Endpoint(error=RuntimeError("transport exploded"))
        config = agent_config(retry=RetryPolicy(max_attempts=2, initial_delay_ms=500))
        harness = Harness(endpoint, [config])

        delivery = asyncio.run(harness.dispatcher.deliver(config, payload()))

        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 2
        assert delivery.response.status_code == 0
        assert delivery.response.error == "RuntimeError: transport exploded"
        assert harness.delays == [0.5]

        endpoint.error = None
        retried = asyncio.run(harness.dispatcher.retry(delivery.id))
        assert retried.status == DeliveryStatus.DELIVERED

    def test_non_ascii_header_rejected(self):
        with pytest.raises(ValidationError):
            agent_config(headers={"X-Team": "équipe"})
        with pytest.raises(ValidationError):
            agent_config(headers={"X-Team": "core\r\nX-Injected: 1"})

    def test_signed_headers(self):
        endpoint = Endpoint()
        harness = Harness(endpoint)
        config = agent_config(headers={"User-Agent": "spoofed", "X-Team": "core"})

        delivery = asyncio.run(harness.dispatcher.deliver(config, payload()))

        [request] = endpoint.requests
        assert verify_signature(request.content, request.headers["X-Maestro-Signature"], SECRET)
        assert request.headers["X-Maestro-Event"] == "task.assigned"
        assert request.headers["X-Maestro-Delivery-ID"] == delivery.id
        assert request.headers["User-Agent"] == "Maestro-Webhook/1.0"
        assert request.headers["X-Team"] == "core"
        assert json.loads(request.content)["data"] == {"task_id": "t-1"}

    def test_cancelled_delivery_marked_failed(self):
        harness = Harness(Endpoint(500))

        async def cancel(seconds):
            raise asyncio.CancelledError()

        harness.dispatcher.sleep = cancel

        async def run():
            try:
                await harness.dispatcher.deliver(agent_config(), payload())
            except asyncio.CancelledError:
                return True
            return False

        assert asyncio.run(run())
        [delivery] = harness.log.recent()
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.response.error == "Delivery cancelled"
        assert delivery.attempts == 1


class TestBroadcastAndRetry:

    def test_broadcast_to_subscribers(self):
        configs = [
            agent_config("be-1"),
            agent_config("be-2", enabled=False),
            agent_config("be-3", events=[WebhookEvent.AGENT_WAKE]),
            agent_config("be-4", events=[WebhookEvent.TASK_ASSIGNED, WebhookEvent.AGENT_WAKE]),
        ]
        harness = Harness(Endpoint(), configs)

        deliveries = asyncio.run(harness.dispatcher.broadcast(payload(WebhookEvent.AGENT_WAKE)))

        assert sorted(d.agent_id for d in deliveries) == ["be-3", "be-4"]
        assert all(d.status == DeliveryStatus.DELIVERED for d in deliveries)

    def test_manual_retry_of_failed_delivery(self):
        endpoint = Endpoint(500, 500, 500)
        harness = Harness(endpoint, [agent_config()])
        failed = asyncio.run(harness.dispatcher.deliver(agent_config(), payload()))
        assert failed.status == DeliveryStatus.FAILED

        retried = asyncio.run(harness.dispatcher.retry(failed.id))

        assert retried.id == failed.id
        assert retried.status == DeliveryStatus.DELIVERED
        assert retried.attempts == 1
        assert len(retried.history) == 4

    def test_retry_in_flight_rejected(self):
        harness = Harness(Endpoint(), [agent_config()])
        delivery = WebhookDelivery(
            agent_id="be-1",
            event=WebhookEvent.TASK_ASSIGNED,
            payload=payload(),
            target_url="http://agents.test/be-1/hook",
            status=DeliveryStatus.RETRYING,
        )
        harness.log.save(delivery)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(harness.dispatcher.retry(delivery.id))

    def test_retry_unknown(self):
        harness = Harness(Endpoint())
        assert asyncio.run(harness.dispatcher.retry("whd-missing")) is None


class TestAssignmentNotification:

    def test_task_assigned_payload(self):
        endpoint = Endpoint()
        harness = Harness(endpoint, [agent_config("fe-1")])
        task = Task(id="t-9", project_id="p1", title="Style navbar", priority=1)
        agent = Agent(id="fe-1", project_id="p1", agent_type=AgentType.FRONTEND)

        delivery = asyncio.run(harness.dispatcher.notify_assignment(task, agent))

        assert delivery.status == DeliveryStatus.DELIVERED
        body = json.loads(endpoint.requests[0].content)
        assert body["event"] == "task.assigned"
        assert body["data"]["task_id"] == "t-9"
        assert body["data"]["agent_type"] == "Frontend"
        assert "**Title**: Style navbar" in body["data"]["prompt"]
        assert body["metadata"]["priority"] == "critical"
        assert body["metadata"]["agent_id"] == "fe-1"

    def test_agent_without_webhook(self):
        harness = Harness(Endpoint())
        task = Task(id="t-9", project_id="p1", title="Style navbar")
        agent = Agent(id="fe-1", project_id="p1", agent_type=AgentType.FRONTEND)

        assert asyncio.run(harness.dispatcher.notify_assignment(task, agent)) is None


class TestDeliveryLog:

    def test_stats(self):
        harness = Harness(Endpoint(500, 500, 500), [agent_config("a"), agent_config("b")])
        asyncio.run(harness.dispatcher.deliver(agent_config("a"), payload()))
        asyncio.run(harness.dispatcher.deliver(agent_config("b"), payload()))

        stats = harness.log.stats()

        assert (stats.total, stats.delivered, stats.failed, stats.pending) == (2, 1, 1, 0)
        assert stats.success_rate == 50.0
        assert stats.by_event == {"task.assigned": 2}
        assert stats.by_agent["a"].failed == 1
        assert stats.by_agent["b"].delivered == 1

    def test_prune(self):
        log = DeliveryLog()
        for days_old in (1, 10):
            log.save(WebhookDelivery(
                agent_id="be-1",
                event=WebhookEvent.TASK_ASSIGNED,
                payload=payload(),
                target_url="http://agents.test/be-1/hook",
                created_at=NOW - timedelta(days=days_old),
            ))

        assert log.prune(days=7, now=NOW) == 1
        assert len(log.for_agent("be-1")) == 1
