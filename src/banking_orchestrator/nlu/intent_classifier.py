"""
Intent Classification Module
Classifies user intents with the language model and post-processes the
model output into an IntentClassification.
"""

import asyncio
import json
import logging
import math
from typing import Any, Dict, Optional

from ..context.conversation import (
    UNKNOWN_INTENT,
    VALID_INTENTS,
    BankingTask,
    ConversationContext,
    IntentClassification,
)
from ..errors import ModelCallError
from ..guards.json_clean import extract_json_object
from ..prompts.intent_prompt import ENTITY_PROMPT_TEMPLATE, INTENT_PROMPT_TEMPLATE
from .entity_resolver import EntityResolver, normalize_entities

logger = logging.getLogger("agent.intent_classifier")

GENERIC_CLARIFICATION_QUESTION = (
    "Could you tell me a bit more about what you'd like to do? For example, check your balance, "
    "apply for a loan or block a card."
)
HISTORY_WINDOW = 5


def parse_confidence(value: Any) -> float:
    """Parse a model confidence. Percentages (1 < c <= 100) are scaled, then clamped to [0, 1]."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(confidence):
        return 0.0
    if 1.0 < confidence <= 100.0:
        confidence /= 100.0
    return max(0.0, min(1.0, confidence))


def parse_intent_label(value: Any) -> str:
    label = str(value or "").strip().lower().replace(" ", "_").replace("-", "_")
    return label if label in VALID_INTENTS else UNKNOWN_INTENT


def parse_classification(
    raw_text: str,
    message: str,
    threshold: float,
    resolver: Optional[EntityResolver] = None,
) -> IntentClassification:
    """
    Turn raw model text into an IntentClassification.

    Deterministic for identical inputs. Raises ModelCallError when no JSON
    object can be recovered.
    """
    data = extract_json_object(raw_text)
    if data is None:
        raise ModelCallError("Intent classifier returned unparseable output")

    intent = parse_intent_label(data.get("intent"))
    confidence = parse_confidence(data.get("confidence"))

    model_entities = data.get("entities")
    entities = normalize_entities(model_entities if isinstance(model_entities, dict) else None)
    if resolver is not None and intent != UNKNOWN_INTENT:
        baseline = resolver.extract_entities(message, intent)
        entities = {**baseline, **entities}

    flagged = data.get("clarification_needed")
    model_flag = flagged is True or (isinstance(flagged, str) and flagged.strip().lower() == "true")
    clarification_needed = confidence < threshold or intent == UNKNOWN_INTENT or model_flag

    question = data.get("clarification_question")
    question = question.strip() if isinstance(question, str) and question.strip() else None
    if clarification_needed and not question:
        question = GENERIC_CLARIFICATION_QUESTION

    return IntentClassification(
        intent=intent,
        confidence=confidence,
        entities=entities,
        clarification_needed=clarification_needed,
        clarification_question=question,
    )


def _render_history(context: ConversationContext) -> str:
    recent = context.recent_messages(HISTORY_WINDOW)
    if not recent:
        return "(no previous messages)"
    return "\n".join(f"{m.role}: {m.content}" for m in recent)


class IntentClassifier:
    """
    Classifies user intents from natural language input
    """

    def __init__(
        self,
        llm_client: Any,
        resolver: Optional[EntityResolver] = None,
        threshold: float = 0.6,
        timeout: Optional[float] = 20.0,
    ):
        self.llm_client = llm_client
        self.resolver = resolver or EntityResolver()
        self.threshold = threshold
        self.timeout = timeout

    async def _call_model(self, prompt: str, max_tokens: int) -> str:
        try:
            return await asyncio.wait_for(self.llm_client.generate(prompt, max_tokens=max_tokens), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Model call timed out after %ss", self.timeout)
            raise ModelCallError(f"Model call timed out after {self.timeout}s") from e
        except ModelCallError:
            raise
        except Exception as e:
            logger.exception("Model call failed: %s", e)
            raise ModelCallError(str(e)) from e

    async def classify(self, message: str, context: ConversationContext) -> IntentClassification:
        """
        Classify ``message`` given the conversation so far.

        Raises ModelCallError on model failure, timeout or unparseable output.
        """
        prompt = INTENT_PROMPT_TEMPLATE.format(
            intents=", ".join(VALID_INTENTS),
            history=_render_history(context),
            message=message,
        )
        raw = await self._call_model(prompt, max_tokens=512)
        logger.debug("Intent classifier raw output: %s", raw)
        result = parse_classification(raw, message, self.threshold, self.resolver)
        logger.info(
            "Classified intent=%s confidence=%.2f clarification_needed=%s entities=%s",
            result.intent,
            result.confidence,
            result.clarification_needed,
            result.entities,
        )
        return result

    async def extract_entities(
        self,
        message: str,
        task: BankingTask,
        context: ConversationContext,
        expected_field: Optional[str] = None,
        fields: Optional[list] = None,
    ) -> Dict[str, Any]:
        """
        Extract task fields from a follow-up message.

        The regex baseline always runs; model entities are merged over it.
        On model failure the baseline is returned alone.
        """
        baseline = self.resolver.extract_entities(message, task, expected_field)
        if not fields:
            return baseline

        prompt = ENTITY_PROMPT_TEMPLATE.format(
            task=task.value,
            fields=", ".join(fields),
            expected_field=expected_field or "nothing in particular",
            collected_json=json.dumps(context.state.collected_fields, default=str),
            history=_render_history(context),
            message=message,
        )
        try:
            raw = await self._call_model(prompt, max_tokens=256)
        except ModelCallError as e:
            logger.warning("Entity extraction fell back to regex baseline: %s", e)
            return baseline

        data = extract_json_object(raw)
        if data is None:
            logger.warning("Entity extraction output unparseable; using regex baseline")
            return baseline
        if isinstance(data.get("entities"), dict):
            data = data["entities"]
        return {**baseline, **normalize_entities(data)}
