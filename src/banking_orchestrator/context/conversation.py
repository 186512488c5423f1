"""
Conversation data model.

ConversationContext is the per-session state owned by the SessionRegistry
and mutated only by the orchestrator turn holding that session's lock.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Phase(str, Enum):
    GREETING = "greeting"
    INTENT_DETECTION = "intent_detection"
    INFORMATION_GATHERING = "information_gathering"
    CONFIRMATION = "confirmation"
    EXECUTION = "execution"
    COMPLETION = "completion"


class BankingTask(str, Enum):
    LOAN_APPLICATION = "loan_application"
    CARD_BLOCKING = "card_blocking"
    ACCOUNT_STATEMENT = "account_statement"
    BALANCE_INQUIRY = "balance_inquiry"
    TRANSACTION_HISTORY = "transaction_history"
    INTEREST_RATE_INQUIRY = "interest_rate_inquiry"
    GENERAL_INQUIRY = "general_inquiry"


UNKNOWN_INTENT = "unknown"
VALID_INTENTS = tuple(task.value for task in BankingTask)


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class ToolCall(BaseModel):
    """
    One invocation of a named tool.

    Starts pending and moves exactly once to success or error through
    succeed()/fail(). Any attribute change after that raises.
    """

    id: str = Field(default_factory=new_id)
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    error: Optional[Dict[str, Any]] = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if not name.startswith("_") and self.status != ToolCallStatus.PENDING:
            raise RuntimeError(f"ToolCall {self.id} ({self.name}) is already {self.status.value}")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status != ToolCallStatus.PENDING

    def succeed(self, result: Any) -> "ToolCall":
        self.result = result
        self.finished_at = utcnow()
        self.status = ToolCallStatus.SUCCESS
        return self

    def fail(self, error: Dict[str, Any]) -> "ToolCall":
        self.error = error
        self.finished_at = utcnow()
        self.status = ToolCallStatus.ERROR
        return self


class MessageMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: Optional[str] = None
    entities: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    phase: Optional[Phase] = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Optional[MessageMetadata] = None


class ConversationState(BaseModel):
    phase: Phase = Phase.GREETING
    current_task: Optional[BankingTask] = None
    required_fields: List[str] = Field(default_factory=list)
    collected_fields: Dict[str, Any] = Field(default_factory=dict)
    pending_clarifications: List[str] = Field(default_factory=list)


class TaskProgress(BaseModel):
    task_type: Optional[BankingTask] = None
    step: int = 0
    total_steps: int = 0
    completed: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)


class ConversationContext(BaseModel):
    id: str
    user_id: str
    current_intent: Optional[str] = None
    state: ConversationState = Field(default_factory=ConversationState)
    entities: Dict[str, Any] = Field(default_factory=dict)
    task_progress: TaskProgress = Field(default_factory=TaskProgress)
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> "ConversationContext":
        return self.model_copy(deep=True)

    def recent_messages(self, limit: int = 5) -> List[Message]:
        return self.messages[-limit:] if limit > 0 else []

    def tool_calls(self) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for msg in self.messages:
            if msg.metadata is not None:
                calls.extend(msg.metadata.tool_calls)
        return calls


class IntentClassification(BaseModel):
    intent: str = UNKNOWN_INTENT
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    entities: Dict[str, Any] = Field(default_factory=dict)
    clarification_needed: bool = True
    clarification_question: Optional[str] = None

    @property
    def task(self) -> Optional[BankingTask]:
        if self.intent in VALID_INTENTS:
            return BankingTask(self.intent)
        return None
