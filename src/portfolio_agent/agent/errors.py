import logging
from dataclasses import dataclass
from enum import Enum

RATE_LIMIT_MESSAGE = (
    "I'm experiencing high demand right now. Please try again in a moment. In the "
    "meantime, feel free to explore the portfolio or contact Rodrigo directly."
)
SERVICE_UNAVAILABLE_MESSAGE = (
    "I'm temporarily unavailable. You can still reach Rodrigo at his email or "
    "LinkedIn. I'll be back shortly!"
)
GENERAL_ERROR_MESSAGE = (
    "I encountered an error processing your message. Please try rephrasing your "
    "question, or contact Rodrigo directly for assistance."
)


class MalformedResponseError(Exception):
    """The model service answered with something we cannot interpret."""


class ToolRoundLimitExceeded(Exception):
    """The model kept requesting tools after the last allowed round."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"Model requested tools after {max_rounds} tool round(s)")
        self.max_rounds = max_rounds


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    message: str


def _status_of(error: BaseException) -> int | None:
    """HTTP-like status carried by the error (openai uses status_code)."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


class ErrorClassifier:
    """Map model-service failures to a fixed taxonomy and a safe user-facing sentence."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)

    def classify(self, error: BaseException) -> Classification:
        status = _status_of(error)
        if status == 429:
            self._logger.warning("Model service rate limited the request: %s", error)
            return Classification(ErrorKind.RATE_LIMITED, RATE_LIMIT_MESSAGE)
        if status == 503:
            self._logger.warning("Model service unavailable: %s", error)
            return Classification(ErrorKind.SERVICE_UNAVAILABLE, SERVICE_UNAVAILABLE_MESSAGE)

        self._logger.error(
            "Chat error (%s): %s", type(error).__name__, error, exc_info=error
        )
        return Classification(ErrorKind.UNKNOWN, GENERAL_ERROR_MESSAGE)
