"""
Tool registry: name -> BankingTool dispatch table.

invoke() always returns a terminal ToolCall. Unknown tools, missing
parameters, timeouts and raised errors all end up as status=error with a
structured payload; nothing propagates to the caller.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from ..clients.mock_bank_client import MockBankClient
from ..clients.rag_client import RAGConnector
from ..context.conversation import ToolCall
from ..errors import ToolExecutionError, ValidationError
from .banking import (
    AccountBalanceTool,
    AccountStatementTool,
    CardBlockTool,
    GeneralInquiryTool,
    InterestRatesTool,
    LoanApplicationTool,
    TransactionHistoryTool,
)
from .base import BankingTool
from .retrieval import BankingContextSearchTool

logger = logging.getLogger("banking_orchestrator.tools")


def _error(error_type: str, message: str, retryable: bool) -> Dict[str, Any]:
    return {"error_type": error_type, "message": message, "retryable": retryable}


class ToolRegistry:
    def __init__(self, tools: Optional[Iterable[BankingTool]] = None, timeout: float = 10.0):
        self.timeout = timeout
        self._tools: Dict[str, BankingTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BankingTool) -> None:
        if not tool.name:
            raise ValueError("tool has no name")
        if tool.name in self._tools:
            raise ValueError(f"tool {tool.name!r} is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[BankingTool]:
        return self._tools.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def descriptors(self, read_only_only: bool = False) -> List[Dict[str, Any]]:
        return [t.descriptor() for t in self._tools.values() if t.read_only or not read_only_only]

    def _validate_tool_input(self, tool: BankingTool, params: Dict[str, Any]) -> List[str]:
        return [p for p in tool.required_params if params.get(p) is None or params.get(p) == ""]

    async def invoke(self, tool_name: str, parameters: Optional[Dict[str, Any]], *, user_id: str) -> ToolCall:
        """
        Execute ``tool_name`` once and return its ToolCall.
        """
        params = dict(parameters or {})
        call = ToolCall(name=tool_name, parameters=params)

        tool = self._tools.get(tool_name)
        if tool is None:
            logger.error("Unknown tool requested: %s", tool_name)
            return call.fail(_error("unknown_tool", f"Unknown tool: {tool_name}", False))

        missing = self._validate_tool_input(tool, params)
        if missing:
            logger.warning("Tool %s missing required params: %s", tool_name, missing)
            return call.fail(
                _error("invalid_parameters", f"Missing required parameters: {', '.join(missing)}", False)
            )

        logger.info("EXECUTING TOOL %s with input %s (user=%s)", tool_name, params, user_id)
        try:
            result = await asyncio.wait_for(tool.execute(params, user_id=user_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", tool_name, self.timeout)
            return call.fail(_error("timeout", f"{tool_name} timed out after {self.timeout}s", True))
        except ToolExecutionError as e:
            e.tool_name = e.tool_name or tool_name
            logger.warning("Tool %s failed (%s, retryable=%s): %s", tool_name, e.error_type, e.retryable, e.message)
            return call.fail(e.to_payload())
        except ValidationError as e:
            logger.warning("Tool %s rejected its input: %s", tool_name, e)
            return call.fail(_error("validation_error", str(e), False))
        except Exception as e:
            logger.exception("Exception while executing tool %s: %s", tool_name, e)
            return call.fail(_error("tool_execution_error", str(e) or type(e).__name__, True))

        logger.info("Tool %s succeeded", tool_name)
        return call.succeed(result)


def build_tool_registry(
    bank: MockBankClient,
    rag: Optional[RAGConnector] = None,
    timeout: float = 10.0,
) -> ToolRegistry:
    """Build the dispatch table once at startup."""
    tools: List[BankingTool] = [
        AccountBalanceTool(bank),
        TransactionHistoryTool(bank),
        AccountStatementTool(bank),
        LoanApplicationTool(bank),
        CardBlockTool(bank),
        InterestRatesTool(bank),
        GeneralInquiryTool(bank),
    ]
    if rag is not None:
        tools.append(BankingContextSearchTool(rag))
    return ToolRegistry(tools, timeout=timeout)
