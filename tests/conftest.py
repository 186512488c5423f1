import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from banking_orchestrator.agent.orchestrator import ConversationOrchestrator
from banking_orchestrator.clients.mock_bank_client import MockBankClient
from banking_orchestrator.gemini_llm_client import ModelReply
from banking_orchestrator.tools.registry import build_tool_registry


def classification(intent: str, confidence: float = 0.95, **entities: Any) -> Dict[str, Any]:
    return {
        "intent": intent,
        "confidence": confidence,
        "entities": entities,
        "clarification_needed": False,
        "clarification_question": None,
    }


class FakeLLMClient:
    """
    Scripted stand-in for GeminiLLMClient.

    Classification prompts pop from ``classifications`` (falling back to
    ``default_classification``), entity prompts pop from ``entity_outputs``
    (falling back to an empty object) and generate_with_tools pops from
    ``replies``.
    """

    def __init__(
        self,
        classifications: Optional[List[Any]] = None,
        default_classification: Optional[Dict[str, Any]] = None,
        entity_outputs: Optional[List[Any]] = None,
        replies: Optional[List[ModelReply]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        tool_error: Optional[Exception] = None,
    ):
        self.classifications = list(classifications or [])
        self.default_classification = default_classification or {"intent": "unknown", "confidence": 0.0}
        self.entity_outputs = list(entity_outputs or [])
        self.replies = list(replies or [])
        self.delay = delay
        self.error = error
        self.tool_error = tool_error
        self.prompts: List[str] = []
        self.tool_rounds: List[Dict[str, Any]] = []

    async def generate(self, prompt: str, max_tokens: int = 512) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if "intent classifier" in prompt:
            item = self.classifications.pop(0) if self.classifications else self.default_classification
        elif "extract structured fields" in prompt:
            item = self.entity_outputs.pop(0) if self.entity_outputs else {}
        else:
            item = {}
        return item if isinstance(item, str) else json.dumps(item)

    async def generate_with_tools(self, messages, tools, system_instruction=None, max_tokens=512) -> ModelReply:
        self.tool_rounds.append({"messages": list(messages), "tools": [t["name"] for t in tools]})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.tool_error is not None:
            raise self.tool_error
        return self.replies.pop(0) if self.replies else ModelReply(text="")

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return [[float(len(t)), 1.0] for t in texts]

    @property
    def classification_prompts(self) -> List[str]:
        return [p for p in self.prompts if "intent classifier" in p]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def bank():
    return MockBankClient()


@pytest.fixture
def tools(bank):
    return build_tool_registry(bank, timeout=2.0)


@pytest.fixture
def llm():
    return FakeLLMClient()


@pytest.fixture
def make_orchestrator(tools):
    def _make(llm_client, **kwargs) -> ConversationOrchestrator:
        kwargs.setdefault("tools", tools)
        return ConversationOrchestrator(llm_client, **kwargs)

    return _make
