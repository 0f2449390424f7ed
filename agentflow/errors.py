from typing import Any, Optional


class AgentflowError(Exception):
    """Base class for all agentflow errors."""


class ConfigurationError(AgentflowError):
    """Required settings (usually provider credentials) are missing."""


class TransportError(AgentflowError):
    """An HTTP or network failure against the workflow engine or model provider.

    The remote payload, when there is one, is kept on ``payload`` so callers
    can surface it.
    """

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status = status
        self.payload = payload


class ToolExecutionError(AgentflowError):
    """A single tool invocation failed. Never escapes ToolExecutor.execute."""


class ModelOutputError(AgentflowError):
    """The model returned text that does not decode into the expected shape."""
