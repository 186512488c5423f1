"""
Error taxonomy for the banking orchestrator.

Every failure the orchestrator can observe maps onto one of these classes.
Only ValidationError and ConfigurationError escape process_message; the
rest are recovered inside the turn and reflected in the reply text or in a
ToolCall's error payload.
"""

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(OrchestratorError):
    """Bad or missing caller input. The turn is not started."""


class ConfigurationError(OrchestratorError):
    """Missing credential or backend endpoint. Fatal to the request only."""


class ModelCallError(OrchestratorError):
    """The language-model backend failed, timed out or returned garbage."""


class ToolExecutionError(OrchestratorError):
    """
    A specific tool failed.

    ``retryable`` tells the state machine whether the user may re-confirm
    the same request (timeouts, backend hiccups) or whether the task has to
    be concluded (unknown user, rejected request).
    """

    error_type = "tool_execution_error"

    def __init__(
        self,
        message: str,
        *,
        tool_name: Optional[str] = None,
        retryable: bool = True,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.tool_name = tool_name
        self.retryable = retryable
        self.detail = detail or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error_type": self.error_type,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


class RetrievalError(ToolExecutionError):
    """The knowledge-base backend failed. An empty result set is not an error."""

    error_type = "retrieval_error"
