"""Per-agent-type execution prompts for task.assigned notifications."""

from abc import ABC, abstractmethod
from typing import Optional

from maestro.app.models import AgentType, Task, TaskExecutionRequest


class PromptStrategy(ABC):
    """Builds the execution request an agent of one type receives."""

    agent_type: AgentType

    @property
    @abstractmethod
    def system_prompt(self) -> str:
        pass

    @property
    @abstractmethod
    def guidance(self) -> str:
        """Specialist guidance placed ahead of the task details."""
        pass

    def build_prompt(self, task: Task) -> str:
        """
        Generate the user prompt for a task.

        The task's own execution prompt, when present, is used as the
        instructions section.
        """
        instructions = task.prompt.strip() or (
            "1. Implement the complete solution for this task\n"
            "2. Include error handling where appropriate\n"
            f"3. Follow best practices for {self.agent_type.value} development"
        )

        return f"""# Task Assignment

{self.guidance}

## Your Task

**ID**: {task.id}
**Title**: {task.title}
**Priority**: P{task.priority}

**Description**: {task.description or "None"}

## Instructions

{instructions}

Report completion by updating the task status when finished."""

    def build_request(self, task: Task) -> TaskExecutionRequest:
        return TaskExecutionRequest(
            task_id=task.id,
            task_title=task.title,
            task_description=task.description,
            prompt=self.build_prompt(task),
            system_prompt=self.system_prompt,
            priority=task.priority,
            project_id=task.project_id,
            agent_type=self.agent_type.value,
        )


class FrontendPromptStrategy(PromptStrategy):
    agent_type = AgentType.FRONTEND

    @property
    def system_prompt(self) -> str:
        return (
            "You are an expert frontend developer. You write clean, type-safe "
            "components with accessible, responsive markup and consistent styling."
        )

    @property
    def guidance(self) -> str:
        return """You are a frontend specialist expert in:
- Component-based UI frameworks
- TypeScript
- Responsive design
- Accessibility (WCAG 2.1)
- Modern CSS (Flexbox, Grid)

Focus on creating clean, reusable components with proper types."""


class BackendPromptStrategy(PromptStrategy):
    agent_type = AgentType.BACKEND

    @property
    def system_prompt(self) -> str:
        return (
            "You are an expert backend developer. You build robust APIs and data "
            "layers with input validation, proper status codes and clear error handling."
        )

    @property
    def guidance(self) -> str:
        return """You are a backend specialist expert in:
- RESTful API design
- Database schemas and migrations
- Authentication & authorization
- Error handling
- Input validation

Focus on creating robust, well-structured APIs with proper error handling and validation."""


class TestingPromptStrategy(PromptStrategy):
    agent_type = AgentType.TESTING

    @property
    def system_prompt(self) -> str:
        return (
            "You are an expert in test-driven development. You write comprehensive, "
            "maintainable tests with good coverage, proper mocking, and clear assertions."
        )

    @property
    def guidance(self) -> str:
        return """You are a testing specialist expert in:
- Unit and integration testing
- Test coverage analysis
- Mocking and fixtures
- Edge case identification

Focus on comprehensive test coverage with clear, maintainable test code."""


class IntegrationPromptStrategy(PromptStrategy):
    agent_type = AgentType.INTEGRATION

    @property
    def system_prompt(self) -> str:
        return (
            "You are an expert integration and DevOps engineer. You wire services "
            "together and automate builds and deployments with resilient, secure configuration."
        )

    @property
    def guidance(self) -> str:
        return """You are an integration specialist expert in:
- Third-party API integration and webhooks
- Docker and CI/CD pipelines
- Deployment automation
- Retry logic and rate limiting

Focus on robust integrations with proper error handling and resilience."""


DEFAULT_STRATEGIES: dict[AgentType, PromptStrategy] = {
    strategy.agent_type: strategy
    for strategy in (
        FrontendPromptStrategy(),
        BackendPromptStrategy(),
        TestingPromptStrategy(),
        IntegrationPromptStrategy(),
    )
}


class PromptStrategyRegistry:
    """Lookup of prompt strategies by agent type."""

    def __init__(self, strategies: Optional[dict[AgentType, PromptStrategy]] = None):
        self.strategies = dict(strategies or DEFAULT_STRATEGIES)

    def register(self, strategy: PromptStrategy) -> None:
        self.strategies[strategy.agent_type] = strategy

    def get(self, agent_type: AgentType) -> PromptStrategy:
        try:
            return self.strategies[agent_type]
        except KeyError:
            raise UnknownAgentTypeError(f"No prompt strategy for {agent_type}") from None

    def build_request(self, task: Task, agent_type: AgentType) -> TaskExecutionRequest:
        return self.get(agent_type).build_request(task)


class UnknownAgentTypeError(Exception):
    """Raised when no strategy is registered for an agent type."""
    pass
