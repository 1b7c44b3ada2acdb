"""Agent type inference from task text."""

import re
from typing import Optional, Protocol

from maestro.app.models import AgentType, Task

# Checked in order; first matching class wins
KEYWORD_PATTERNS: list[tuple[AgentType, re.Pattern]] = [
    (AgentType.FRONTEND, re.compile(
        r"\b(ui|ux|frontend|front-end|react|component|css|style|styling|tailwind)\b"
    )),
    (AgentType.BACKEND, re.compile(
        r"\b(api|apis|backend|back-end|database|server|endpoints?|routes?)\b"
    )),
    (AgentType.TESTING, re.compile(
        r"\b(tests?|testing|spec|specs|jest|cypress|qa|verify|verification|validate|validation)\b"
    )),
    (AgentType.INTEGRATION, re.compile(
        r"\b(integration|deploy\w*|ci|ci/cd|docker\w*|pipeline)\b"
    )),
]

DEFAULT_AGENT_TYPE = AgentType.BACKEND


class AgentTypeClassifier(Protocol):
    """Maps a task to the agent class that should execute it."""

    def classify(self, task: Task) -> AgentType:
        ...


class KeywordClassifier:
    """Keyword heuristic classifier (word-boundary matching on title, description, prompt)."""

    def __init__(
        self,
        patterns: Optional[list[tuple[AgentType, re.Pattern]]] = None,
        default: AgentType = DEFAULT_AGENT_TYPE
    ):
        self.patterns = patterns if patterns is not None else KEYWORD_PATTERNS
        self.default = default

    def classify(self, task: Task) -> AgentType:
        text = task.text
        for agent_type, pattern in self.patterns:
            if pattern.search(text):
                return agent_type
        return self.default
