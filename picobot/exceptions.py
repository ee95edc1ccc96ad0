"""Custom exceptions for Picobot."""


class PicobotError(Exception):
    """Base exception for Picobot."""

    pass


class ConfigurationError(PicobotError):
    """Configuration-related errors."""

    pass


class LLMError(PicobotError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM request failed (transport, auth, rate limit, server error)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(PicobotError):
    """Tool execution errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class SubagentError(PicobotError):
    """Subagent coordination errors."""

    pass


class NotInSubagentContextError(SubagentError):
    """A subagent-only operation was invoked outside a subagent run."""

    def __init__(self, operation: str = "ask_main_agent"):
        super().__init__(f"{operation} can only be used from inside a subagent")
        self.operation = operation


class SubagentNotFoundError(SubagentError):
    """Unknown subagent id."""

    def __init__(self, subagent_id: str):
        super().__init__(f"Unknown subagent: {subagent_id}")
        self.subagent_id = subagent_id


class UnknownAgentTypeError(SubagentError):
    """Requested agent type is not configured."""

    def __init__(self, agent_type: str, available: list[str]):
        super().__init__(
            f"Unknown agent type '{agent_type}'. Available: {', '.join(available) or 'none'}"
        )
        self.agent_type = agent_type


class SubagentQuestionTimeoutError(SubagentError):
    """The main agent did not answer a subagent question in time."""

    def __init__(self, subagent_id: str, timeout_seconds: float):
        super().__init__(
            f"No answer from main agent for subagent {subagent_id} after {timeout_seconds:g}s"
        )
        self.subagent_id = subagent_id
        self.timeout_seconds = timeout_seconds
