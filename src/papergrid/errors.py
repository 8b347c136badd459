"""Error taxonomy shared by the indexing and chat pipelines."""

from __future__ import annotations

GENERIC_CHAT_ERROR = "AI chat failed, please try again later"


class AiError(Exception):
    """Base class for all AI pipeline errors."""


class AiConfigurationError(AiError):
    """AI is disabled, the API key is missing, or the provider is misconfigured."""


class AiBaseUrlValidationError(AiConfigurationError):
    """The configured provider base URL is not allowed."""


class ChatValidationError(AiError):
    """The chat request body is malformed."""


class UpstreamProviderError(AiError):
    """The model provider timed out, answered non-2xx, or sent a malformed body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VectorIndexNotReadyError(AiError):
    """Semantic search was attempted before anything was indexed."""

    def __init__(self, message: str = "Please build the vector index first") -> None:
        super().__init__(message)


class IndexQueueFullError(AiError):
    """The index task queue reached its pending limit."""


class ToolInputParsingError(AiError):
    """Tool arguments failed schema validation."""


class ToolParameterRetryExceededError(AiError):
    """Tool arguments kept failing validation after all retries."""

    def __init__(self, tool_name: str, retries: int, last_error: Exception) -> None:
        super().__init__(
            f"Tool {tool_name} failed argument parsing after {retries} retries: {last_error}"
        )
        self.tool_name = tool_name
        self.retries = retries
        self.last_error = last_error


class ClientAbortError(AiError):
    """The client went away; the stream stops without reporting an error."""

    def __init__(self) -> None:
        super().__init__("client aborted")


def to_client_safe_error_message(error: BaseException) -> str:
    """Message that may be shown to the end user for ``error``."""
    if isinstance(error, (AiConfigurationError, ChatValidationError, VectorIndexNotReadyError)):
        return str(error)
    return GENERIC_CHAT_ERROR
