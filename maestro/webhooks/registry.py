"""Per-agent webhook configuration registry."""

import logging
from typing import Any, Optional

from maestro.app.models import AgentWebhookConfig, WebhookEvent

logger = logging.getLogger(__name__)


class WebhookConfigRegistry:
    """In-process registry of agent webhook endpoints, keyed by agent id."""

    def __init__(self, configs: Optional[list[AgentWebhookConfig]] = None):
        self._configs: dict[str, AgentWebhookConfig] = {}
        for config in configs or []:
            self.register(config)

    def register(self, config: AgentWebhookConfig) -> AgentWebhookConfig:
        """Add or replace the configuration for an agent."""
        self._configs[config.agent_id] = config.model_copy(deep=True)
        logger.info(f"Registered webhook for {config.agent_name or config.agent_id} -> {config.webhook_url}")
        return config

    def update(self, agent_id: str, **changes: Any) -> Optional[AgentWebhookConfig]:
        config = self._configs.get(agent_id)
        if config is None:
            return None

        updated = AgentWebhookConfig.model_validate({**config.model_dump(), **changes})
        self._configs[agent_id] = updated
        return updated.model_copy(deep=True)

    def get(self, agent_id: str) -> Optional[AgentWebhookConfig]:
        config = self._configs.get(agent_id)
        return config.model_copy(deep=True) if config else None

    def list_configs(self) -> list[AgentWebhookConfig]:
        return [config.model_copy(deep=True) for config in self._configs.values()]

    def delete(self, agent_id: str) -> bool:
        return self._configs.pop(agent_id, None) is not None

    def subscribers(self, event: WebhookEvent) -> list[AgentWebhookConfig]:
        """Enabled configurations subscribed to an event."""
        return [
            config.model_copy(deep=True)
            for config in self._configs.values()
            if config.enabled and event in config.events
        ]
