"""
agent/orchestrator.py

ConversationOrchestrator: one dialogue turn per process_message() call.

Each turn:
- resolves the session (creating it on first use) and takes its lock,
- works on a deep copy of the ConversationContext,
- runs exactly one phase-appropriate step (intent detection, slot filling,
  confirmation, execution) with the automatic chaining the phases allow,
- commits the copy and both messages atomically at the end.

Phase transitions are computed by agent.state_machine.next_phase; this
module only sequences components and writes the results into the context.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..config import BUSY_POLICIES
from ..context.conversation import (
    BankingTask,
    ConversationContext,
    ConversationState,
    Message,
    MessageMetadata,
    Phase,
    TaskProgress,
    ToolCall,
    ToolCallStatus,
    utcnow,
)
from ..context.session_manager import SessionEntry, SessionRegistry
from ..errors import ConfigurationError, ModelCallError, ValidationError
from ..gemini_llm_client import ModelReply
from ..nlu.intent_classifier import IntentClassifier
from ..prompts.system_response import COMPOSE_PROMPT_TEMPLATE, SYSTEM_PROMPT
from ..schemas.rag import RAGSearchResponse
from ..tools.registry import ToolRegistry
from . import helpers
from .slot_filling import MergeResult, merge, next_question
from .state_machine import TurnEvent, next_phase
from .task_catalog import TaskDefinition, get_task

logger = logging.getLogger("agent")


@dataclass
class TurnResult:
    response: str
    context: ConversationContext


@dataclass
class _Turn:
    """Scratch state for one turn; becomes the messages' metadata at commit."""

    message: str
    user_id: str
    context: ConversationContext
    entry: SessionEntry
    intent: Optional[str] = None
    confidence: Optional[float] = None
    entities: Optional[Dict[str, Any]] = None
    tool_calls: List[ToolCall] = field(default_factory=list)


class ConversationOrchestrator:
    def __init__(
        self,
        llm_client: Any,
        tools: ToolRegistry,
        sessions: Optional[SessionRegistry] = None,
        classifier: Optional[IntentClassifier] = None,
        intent_confidence_threshold: float = 0.6,
        model_timeout_seconds: float = 20.0,
        max_tool_rounds: int = 3,
        busy_policy: str = "wait",
    ) -> None:
        if busy_policy not in BUSY_POLICIES:
            raise ValueError(f"busy_policy must be one of {BUSY_POLICIES}")
        self.llm_client = llm_client
        self.tools = tools
        self.sessions = sessions or SessionRegistry()
        self.classifier = classifier or IntentClassifier(
            llm_client,
            threshold=intent_confidence_threshold,
            timeout=model_timeout_seconds,
        )
        self.model_timeout = model_timeout_seconds
        self.max_tool_rounds = max_tool_rounds
        self.busy_policy = busy_policy

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def process_message(self, conversation_id: str, user_id: str, message: str) -> TurnResult:
        """
        Handle one user message and return the reply plus a context snapshot.

        Raises ValidationError for blank arguments and ConfigurationError
        when no model client is configured.
        """
        for name, value in (("conversation_id", conversation_id), ("user_id", user_id), ("message", message)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} must be a non-empty string")
        if self.llm_client is None:
            raise ConfigurationError("API key not configured")

        message = message.strip()
        arrived_at = utcnow()

        while True:
            entry = await self.sessions.get_or_create(conversation_id, user_id)

            if entry.busy and entry.active_phase == Phase.EXECUTION:
                logger.info("Session %s is executing a task; answering without a new turn", conversation_id)
                return TurnResult(helpers.IN_PROGRESS_TEXT, entry.context.snapshot())
            if entry.busy and self.busy_policy == "reject":
                logger.info("Session %s busy; rejecting message", conversation_id)
                return TurnResult(helpers.BUSY_TEXT, entry.context.snapshot())

            async with entry.lock:
                if entry.closed:
                    # deleted while this message was queued; start over on a fresh context
                    logger.info("Session %s was deleted while queued; re-resolving", conversation_id)
                    continue
                return await self._run_locked(entry, user_id, message, arrived_at)

    async def clear_conversation(self, conversation_id: str) -> None:
        """Delete a conversation. Clearing an unknown id is a no-op."""
        if not isinstance(conversation_id, str) or not conversation_id.strip():
            raise ValidationError("conversation_id must be a non-empty string")
        await self.sessions.delete(conversation_id)

    def get_conversation(self, conversation_id: str) -> Optional[ConversationContext]:
        entry = self.sessions.get(conversation_id)
        return entry.context.snapshot() if entry is not None else None

    # ------------------------------------------------------------------
    # Turn driver
    # ------------------------------------------------------------------
    async def _run_locked(self, entry: SessionEntry, user_id: str, message: str, arrived_at) -> TurnResult:
        working = entry.context.snapshot()
        turn = _Turn(message=message, user_id=user_id, context=working, entry=entry)

        logger.info("=" * 80)
        logger.info("TURN - Starting")
        logger.info(
            "Session: %s | Phase: %s | Task: %s | Message: %s",
            working.id,
            working.state.phase.value,
            working.state.current_task.value if working.state.current_task else None,
            message,
        )

        try:
            response = await self._step(turn)
        except Exception as e:
            logger.exception("TURN: unexpected error; resetting dialogue: %s", e)
            self._reset_dialogue(working)
            response = helpers.APOLOGY_TEXT
        finally:
            entry.active_phase = None

        phase = working.state.phase
        working.messages.append(
            Message(
                role="user",
                content=message,
                timestamp=arrived_at,
                metadata=MessageMetadata(
                    intent=turn.intent,
                    entities=turn.entities,
                    confidence=turn.confidence,
                    phase=phase,
                ),
            )
        )
        working.messages.append(
            Message(
                role="assistant",
                content=response,
                metadata=MessageMetadata(intent=turn.intent, tool_calls=list(turn.tool_calls), phase=phase),
            )
        )
        working.updated_at = utcnow()

        if entry.closed:
            logger.info("TURN - Session %s deleted mid-turn; result discarded", working.id)
        else:
            entry.context = working
            entry.last_activity = working.updated_at

        logger.info("TURN - Complete (phase=%s, tool_calls=%d)", phase.value, len(turn.tool_calls))
        logger.info("=" * 80)
        return TurnResult(response, working.snapshot())

    async def _step(self, turn: _Turn) -> str:
        ctx = turn.context
        phase = ctx.state.phase

        if phase == Phase.GREETING:
            self._transition(ctx, TurnEvent.GREETED)
            if helpers.is_greeting(turn.message):
                return helpers.GREETING_TEXT
            return await self._handle_intent_detection(turn)

        if phase == Phase.COMPLETION:
            ctx.task_progress = TaskProgress()
            self._transition(ctx, TurnEvent.TASK_CLEARED)
            return await self._handle_intent_detection(turn)

        if phase == Phase.INTENT_DETECTION:
            return await self._handle_intent_detection(turn)

        if phase == Phase.INFORMATION_GATHERING:
            return await self._handle_information_gathering(turn)

        if phase == Phase.CONFIRMATION:
            return await self._handle_confirmation(turn)

        # A committed context never rests in execution
        logger.warning("Context %s found in phase %s; resetting", ctx.id, phase.value)
        self._reset_dialogue(ctx)
        return await self._handle_intent_detection(turn)

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------
    async def _handle_intent_detection(self, turn: _Turn) -> str:
        ctx = turn.context
        try:
            classification = await self.classifier.classify(turn.message, ctx)
        except ModelCallError as e:
            logger.warning("Intent classification failed; asking for clarification: %s", e)
            ctx.state.pending_clarifications = [helpers.GENERIC_CLARIFICATION]
            self._transition(ctx, TurnEvent.INTENT_UNCLEAR)
            return helpers.GENERIC_CLARIFICATION

        turn.intent = classification.intent
        turn.confidence = classification.confidence
        turn.entities = dict(classification.entities)
        ctx.current_intent = classification.intent

        task = classification.task
        if classification.clarification_needed or task is None:
            question = classification.clarification_question or helpers.GENERIC_CLARIFICATION
            ctx.state.pending_clarifications = [question]
            self._transition(ctx, TurnEvent.INTENT_UNCLEAR)
            return question

        definition = get_task(task)
        ctx.state = ConversationState(phase=ctx.state.phase, current_task=task)
        ctx.task_progress = TaskProgress(task_type=task, total_steps=len(definition.steps))
        result = merge(definition, {}, classification.entities)
        self._apply_merge(ctx, result, classification.entities)
        self._transition(ctx, TurnEvent.INTENT_RESOLVED)
        return await self._continue_task(turn, definition, result)

    async def _handle_information_gathering(self, turn: _Turn) -> str:
        ctx = turn.context
        definition = self._active_task(ctx)
        if definition is None:
            return await self._handle_intent_detection(turn)

        turn.intent = definition.task.value
        if helpers.is_cancel(turn.message):
            self._transition(ctx, TurnEvent.CANCELLED)
            return helpers.CANCELLED_TEXT

        expected = ctx.state.required_fields[0] if ctx.state.required_fields else None
        entities = await self.classifier.extract_entities(
            turn.message, definition.task, ctx, expected_field=expected, fields=list(definition.known_fields)
        )
        turn.entities = entities

        result = merge(definition, ctx.state.collected_fields, entities)
        self._apply_merge(ctx, result, entities)
        self._transition(ctx, TurnEvent.FIELDS_UPDATED)

        if not result.updated and not result.rejected_fields and ctx.state.phase == Phase.INFORMATION_GATHERING:
            return "Sorry, I didn't catch that. " + (next_question(definition, result) or "")
        return await self._continue_task(turn, definition, result)

    async def _handle_confirmation(self, turn: _Turn) -> str:
        ctx = turn.context
        definition = self._active_task(ctx)
        if definition is None:
            return await self._handle_intent_detection(turn)

        turn.intent = definition.task.value
        verdict = helpers.classify_confirmation(turn.message)
        if verdict == "cancel":
            self._transition(ctx, TurnEvent.CANCELLED)
            return helpers.CANCELLED_TEXT

        if verdict == "confirm":
            entities = self.classifier.resolver.extract_entities(turn.message, definition.task)
        else:
            entities = await self.classifier.extract_entities(
                turn.message, definition.task, ctx, fields=list(definition.known_fields)
            )
        turn.entities = entities

        result = merge(definition, ctx.state.collected_fields, entities)
        if result.changed_fields or result.added_fields:
            logger.info("Confirmation invalidated by correction: %s", result.changed_fields + result.added_fields)
            self._apply_merge(ctx, result, entities)
            self._transition(ctx, TurnEvent.CORRECTED)
            if ctx.state.phase == Phase.CONFIRMATION:
                return "Got it, I've updated that.\n" + helpers.build_confirmation_summary(
                    definition, ctx.state.collected_fields
                )
            return next_question(definition, result) or ""

        if result.rejected_fields:
            problems = " ".join(result.rejected_fields.values())
            return f"{problems}\n" + helpers.build_confirmation_summary(definition, ctx.state.collected_fields)

        if verdict == "confirm":
            self._transition(ctx, TurnEvent.CONFIRMED)
            return await self._execute(turn, definition)

        if verdict == "deny":
            self._transition(ctx, TurnEvent.DENIED)
            return helpers.DENIED_TEXT

        return helpers.build_confirmation_summary(definition, ctx.state.collected_fields) + "\n" + helpers.CONFIRM_REPROMPT

    async def _continue_task(self, turn: _Turn, definition: TaskDefinition, result: MergeResult) -> str:
        """Reply for whatever phase the task landed in after a merge."""
        phase = turn.context.state.phase
        if phase == Phase.INFORMATION_GATHERING:
            return next_question(definition, result) or helpers.DENIED_TEXT
        if phase == Phase.CONFIRMATION:
            summary = helpers.build_confirmation_summary(definition, turn.context.state.collected_fields)
            if result.rejected_fields:
                return " ".join(result.rejected_fields.values()) + "\n" + summary
            return summary
        if phase == Phase.EXECUTION:
            return await self._execute(turn, definition)
        return helpers.GENERIC_CLARIFICATION

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def _execute(self, turn: _Turn, definition: TaskDefinition) -> str:
        turn.entry.active_phase = Phase.EXECUTION
        if definition.conversational:
            return await self._answer_with_tools(turn, definition)

        ctx = turn.context
        call = await self.tools.invoke(definition.tool_name, dict(ctx.state.collected_fields), user_id=turn.user_id)
        turn.tool_calls.append(call)
        logger.info("Execution result: %s", helpers.format_observation_for_history(call.name, call.result or call.error))
        return self._finish_execution(turn, definition, call, helpers.format_task_result(definition.task, call.result))

    def _finish_execution(self, turn: _Turn, definition: TaskDefinition, call: ToolCall, success_text: str) -> str:
        ctx = turn.context
        if call.status == ToolCallStatus.SUCCESS:
            ctx.task_progress.completed = True
            ctx.task_progress.step = ctx.task_progress.total_steps
            ctx.task_progress.data["result"] = call.result
            self._transition(ctx, TurnEvent.EXECUTION_SUCCEEDED)
            return success_text

        error = call.error or {}
        self._transition(ctx, TurnEvent.EXECUTION_FAILED, retryable=bool(error.get("retryable")))
        phase = ctx.state.phase
        text = helpers.format_tool_failure(error, retry_possible=phase == Phase.CONFIRMATION)
        if phase == Phase.INFORMATION_GATHERING:
            pending = MergeResult(dict(ctx.state.collected_fields), missing_fields=list(ctx.state.required_fields))
            question = next_question(definition, pending)
            if question:
                text += " " + question
        return text

    async def _answer_with_tools(self, turn: _Turn, definition: TaskDefinition) -> str:
        """
        Function-calling loop for conversational read-only tasks. The model
        may request read-only tools for up to max_tool_rounds rounds before
        it has to answer. Any model failure falls back to the task's own tool.
        """
        ctx = turn.context
        # a retry after a failed answer reuses the question that started the task
        question = ctx.task_progress.data.setdefault("question", turn.message)
        descriptors = self.tools.descriptors(read_only_only=True)
        allowed = {d["name"] for d in descriptors}
        prompt = COMPOSE_PROMPT_TEMPLATE.format(
            history=helpers.render_history_for_prompt(ctx.recent_messages(5)),
            message=question,
        ).strip()
        transcript: List[Dict[str, Any]] = [{"role": "user", "text": prompt}]

        try:
            for round_no in range(1, self.max_tool_rounds + 2):
                final_round = round_no > self.max_tool_rounds
                reply = await self._model_round(transcript, [] if final_round else descriptors)
                if not reply.wants_tools or final_round:
                    text = reply.text.strip()
                    if not text:
                        break
                    ctx.task_progress.completed = True
                    ctx.task_progress.step = ctx.task_progress.total_steps
                    self._transition(ctx, TurnEvent.EXECUTION_SUCCEEDED)
                    return text

                logger.info("Tool round %d/%d: %s", round_no, self.max_tool_rounds, [r.name for r in reply.tool_calls])
                transcript.append({"role": "model", "text": reply.text, "tool_calls": reply.tool_calls})
                for request in reply.tool_calls:
                    if request.name in allowed:
                        call = await self.tools.invoke(request.name, request.arguments, user_id=turn.user_id)
                    else:
                        call = ToolCall(name=request.name, parameters=dict(request.arguments)).fail({
                            "error_type": "tool_not_allowed",
                            "message": f"{request.name} is not available here",
                            "retryable": False,
                        })
                    turn.tool_calls.append(call)
                    payload = call.result if call.status == ToolCallStatus.SUCCESS else {"error": call.error}
                    if not isinstance(payload, dict):
                        payload = {"result": payload}
                    transcript.append({"role": "tool", "name": request.name, "response": payload})
        except ModelCallError as e:
            logger.warning("Function-calling loop failed; answering directly: %s", e)

        return await self._direct_answer(turn, definition)

    async def _model_round(self, transcript: List[Dict[str, Any]], descriptors: List[Dict[str, Any]]) -> ModelReply:
        try:
            return await asyncio.wait_for(
                self.llm_client.generate_with_tools(transcript, descriptors, system_instruction=SYSTEM_PROMPT),
                timeout=self.model_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ModelCallError(f"Model call timed out after {self.model_timeout}s") from e
        except ModelCallError:
            raise
        except Exception as e:
            logger.exception("generate_with_tools failed: %s", e)
            raise ModelCallError(str(e)) from e

    async def _direct_answer(self, turn: _Turn, definition: TaskDefinition) -> str:
        """Deterministic answer without the model: knowledge base first, then the task tool."""
        question = turn.context.task_progress.data.get("question", turn.message)
        if definition.task == BankingTask.GENERAL_INQUIRY and self.tools.get("search_banking_context") is not None:
            search = await self.tools.invoke("search_banking_context", {"query": question}, user_id=turn.user_id)
            turn.tool_calls.append(search)
            if search.status == ToolCallStatus.SUCCESS:
                response = RAGSearchResponse.model_validate(search.result)
                if not response.is_empty:
                    return self._finish_execution(turn, definition, search, helpers.format_search_results(response))

        params = {"question": question} if definition.task == BankingTask.GENERAL_INQUIRY else {}
        call = await self.tools.invoke(definition.tool_name, params, user_id=turn.user_id)
        turn.tool_calls.append(call)
        return self._finish_execution(turn, definition, call, helpers.format_task_result(definition.task, call.result))

    # ------------------------------------------------------------------
    # Context bookkeeping
    # ------------------------------------------------------------------
    def _active_task(self, ctx: ConversationContext) -> Optional[TaskDefinition]:
        definition = get_task(ctx.state.current_task) if ctx.state.current_task else None
        if definition is None:
            logger.warning("Phase %s without an active task; falling back to intent detection", ctx.state.phase.value)
            self._reset_dialogue(ctx)
        return definition

    @staticmethod
    def _apply_merge(ctx: ConversationContext, result: MergeResult, entities: Dict[str, Any]) -> None:
        ctx.state.collected_fields = dict(result.collected_fields)
        ctx.state.required_fields = list(result.missing_fields)
        ctx.entities.update(entities)
        if result.extra_entities:
            ctx.task_progress.data.setdefault("extra_entities", {}).update(result.extra_entities)

    def _transition(self, ctx: ConversationContext, event: TurnEvent, retryable: bool = False) -> Phase:
        definition = get_task(ctx.state.current_task) if ctx.state.current_task else None
        old = ctx.state.phase
        new = next_phase(
            old,
            event,
            has_task=definition is not None,
            missing_fields=ctx.state.required_fields,
            requires_confirmation=definition.requires_confirmation if definition else False,
            retryable=retryable,
        )
        ctx.state.phase = new
        logger.info("PHASE %s --%s--> %s", old.value, event.value, new.value)

        if new == Phase.COMPLETION:
            ctx.state.current_task = None
            ctx.state.required_fields = []
            ctx.state.collected_fields = {}
            ctx.state.pending_clarifications = []
        elif new == Phase.INFORMATION_GATHERING:
            ctx.task_progress.step = 0
        elif new == Phase.CONFIRMATION and definition is not None:
            ctx.task_progress.step = max(0, len(definition.steps) - 2)
        elif new == Phase.EXECUTION and definition is not None:
            ctx.task_progress.step = max(0, len(definition.steps) - 1)
        return new

    @staticmethod
    def _reset_dialogue(ctx: ConversationContext) -> None:
        ctx.state = ConversationState(phase=Phase.INTENT_DETECTION)
        ctx.current_intent = None
        ctx.task_progress = TaskProgress()
