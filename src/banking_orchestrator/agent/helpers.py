"""
Shared utilities for the conversation orchestrator.

This file centralizes reply wording, formatting and history rendering so
that the orchestrator stays focused on turn sequencing.
"""

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..clients.mock_bank_client import period_label
from ..context.conversation import BankingTask, Message
from ..schemas.rag import RAGSearchResponse
from .task_catalog import TaskDefinition

logger = logging.getLogger("agent.helpers")

GREETING_TEXT = (
    "Hello! I'm your banking assistant. I can help you check your balance, review transactions, "
    "get an account statement, apply for a loan, block a card, or answer questions about our rates "
    "and services. What can I do for you today?"
)
GENERIC_CLARIFICATION = (
    "I'm sorry, I didn't quite catch that. Could you tell me what you'd like to do? For example, "
    "check your balance, apply for a loan or block a card."
)
APOLOGY_TEXT = "I'm sorry, something went wrong on my side. Could you please repeat your request?"
BUSY_TEXT = "I'm still working on your previous message. Please wait a moment and try again."
IN_PROGRESS_TEXT = "I'm processing your request right now. I'll have an answer for you shortly."
CANCELLED_TEXT = "No problem, I've cancelled that request. Is there anything else I can help with?"
DENIED_TEXT = "Okay, what would you like to change?"
TOOL_FAILURE_TEXT = "I'm sorry, I couldn't complete that action."
RETRY_HINT = "Reply 'yes' to try again or 'cancel' to stop."
CONFIRM_REPROMPT = "Please reply 'yes' to confirm or 'cancel' to stop."
NO_ANSWER_TEXT = (
    "I don't have that information right now. For detailed help, please contact customer service "
    "or visit your nearest branch."
)

_GREETING_RE = re.compile(
    r"^\s*(hi|hello|hey|hiya|good\s+(?:morning|afternoon|evening)|greetings)(?:\s+there)?[\s!.,]*$",
    re.I,
)
_CANCEL_RE = re.compile(r"\b(cancel|stop|never\s*mind|forget\s+it|abort|quit)\b", re.I)
_DENY_RE = re.compile(
    r"^\W*(?:no|nope|nah)\b(?!\s+(?:problem|worries)\b)|\b(?:wrong|incorrect|not\s+(?:right|correct))\b",
    re.I,
)
_CONFIRM_RE = re.compile(
    r"\b(yes|yeah|yep|yup|confirm(?:ed)?|proceed|correct|go\s+ahead|sure|ok(?:ay)?|do\s+it|please\s+do)\b",
    re.I,
)

FIELD_LABELS = {
    "amount": "Amount",
    "purpose": "Purpose",
    "tenure": "Tenure",
    "employment_status": "Employment status",
    "monthly_income": "Monthly income",
    "card_type": "Card type",
    "last_four_digits": "Card ending in",
    "reason": "Reason",
    "time_period": "Period",
}


def is_greeting(text: str) -> bool:
    return bool(_GREETING_RE.match(text or ""))


def classify_confirmation(text: str) -> Optional[str]:
    """
    Return "cancel", "deny", "confirm" or None for a reply to a confirmation
    prompt. Cancel wins over deny, deny wins over confirm.
    """
    if not text:
        return None
    if _CANCEL_RE.search(text):
        return "cancel"
    if _DENY_RE.search(text):
        return "deny"
    if _CONFIRM_RE.search(text):
        return "confirm"
    return None


def is_cancel(text: str) -> bool:
    return bool(_CANCEL_RE.search(text or ""))


def format_amount(value: Any, currency: str = "USD") -> Optional[str]:
    """Return a nicely formatted amount string like $15,420.50 or None if invalid."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            num = Decimal(re.sub(r"[^\d.\-]", "", value))
        else:
            num = Decimal(str(value))
    except InvalidOperation:
        return None

    sign = "-" if num < 0 else ""
    num = abs(num)
    if num == num.to_integral():
        body = f"{int(num):,}"
    else:
        body = f"{num.quantize(Decimal('0.01')):,}"
    if currency == "USD":
        return f"{sign}${body}"
    return f"{sign}{body} {currency}"


def format_field_value(name: str, value: Any) -> str:
    if name in ("amount", "monthly_income"):
        return format_amount(value) or str(value)
    if name == "tenure":
        return f"{value} months"
    if name == "time_period":
        return period_label(value)
    if isinstance(value, str):
        return value.replace("_", " ")
    return str(value)


def build_confirmation_summary(definition: TaskDefinition, collected: Mapping[str, Any]) -> str:
    lines = [f"Please confirm your {definition.name.lower()} details:"]
    for name in definition.known_fields:
        if name in collected:
            lines.append(f"- {FIELD_LABELS.get(name, name)}: {format_field_value(name, collected[name])}")
    lines.append("Shall I proceed? (yes / cancel)")
    return "\n".join(lines)


def render_history_for_prompt(messages: Sequence[Message], max_messages: int = 5) -> str:
    """
    Render a short text block from recent conversation history for use
    inside a prompt.
    """
    if not messages:
        return "(no previous messages)"
    recent = list(messages)[-max_messages:]
    return "\n".join(f"{msg.role}: {msg.content}" for msg in recent)


def format_observation_for_history(tool_name: str, observation: Any) -> str:
    """
    Summarise a tool observation so it can be logged compactly.
    """
    if isinstance(observation, dict):
        if "balance" in observation:
            return f"{tool_name} -> balance: {observation.get('balance')} {observation.get('currency', '')}".rstrip()
        if isinstance(observation.get("transactions"), list):
            return f"{tool_name} -> returned {len(observation['transactions'])} transactions"
        if isinstance(observation.get("results"), list):
            return f"{tool_name} -> returned {len(observation['results'])} passages"
        short = json.dumps(observation, default=str)
        return f"{tool_name} -> {short[:200]}"
    if isinstance(observation, list):
        return f"{tool_name} -> list length {len(observation)}"
    return f"{tool_name} -> {str(observation)[:200]}"


def format_search_results(response: RAGSearchResponse, limit: int = 3) -> str:
    if response.is_empty:
        return NO_ANSWER_TEXT
    passages = [r.text.strip() for r in response.results[:limit] if r.text.strip()]
    return "\n\n".join(passages) if passages else NO_ANSWER_TEXT


# ---------------------------------------------------------------------------
# Task result rendering
# ---------------------------------------------------------------------------

def _format_transactions(transactions: List[Dict[str, Any]], limit: int = 10) -> List[str]:
    lines = []
    for tx in transactions[:limit]:
        amount = format_amount(tx.get("amount")) or str(tx.get("amount"))
        lines.append(f"- {tx.get('date', '')}: {tx.get('description', '')} ({amount})")
    return lines


def format_task_result(task: BankingTask, result: Any) -> str:
    """Turn a successful execution tool result into the user-facing reply."""
    data = result if isinstance(result, dict) else {}

    if task == BankingTask.BALANCE_INQUIRY:
        balance = format_amount(data.get("balance"), data.get("currency", "USD"))
        available = format_amount(data.get("available_balance"), data.get("currency", "USD"))
        text = f"Your {data.get('account_type', 'account')} account balance is {balance}."
        if available and available != balance:
            text += f" Available balance: {available}."
        return text

    if task == BankingTask.TRANSACTION_HISTORY:
        transactions = data.get("transactions") or []
        period = data.get("period") or "the selected period"
        if not transactions:
            return f"You have no transactions for {period}."
        lines = [f"Here are your {len(transactions)} transactions for {period}:"]
        lines.extend(_format_transactions(transactions))
        return "\n".join(lines)

    if task == BankingTask.ACCOUNT_STATEMENT:
        transactions = data.get("transactions") or []
        lines = [
            f"Account statement for {data.get('period', 'the selected period')} "
            f"(account ending {str(data.get('account_number', ''))[-4:]}):",
            f"Opening balance: {format_amount(data.get('opening_balance'))}",
            f"Closing balance: {format_amount(data.get('closing_balance'))}",
        ]
        if transactions:
            lines.append(f"{len(transactions)} transactions:")
            lines.extend(_format_transactions(transactions))
        else:
            lines.append("No transactions in this period.")
        return "\n".join(lines)

    if task == BankingTask.LOAN_APPLICATION:
        text = (
            f"Your {data.get('purpose', '')} loan application for {format_amount(data.get('amount'))} "
            f"over {data.get('tenure')} months has been submitted. Application ID: {data.get('application_id')}."
        )
        payment = format_amount(data.get("estimated_monthly_payment"))
        if payment:
            text += f" Estimated monthly payment: {payment} at {data.get('interest_rate')}% a year."
        return text

    if task == BankingTask.CARD_BLOCKING:
        return (
            f"Your {data.get('card_type', '')} card ending in {data.get('last_four_digits')} has been blocked. "
            f"Reference: {data.get('request_id')}. A replacement card can be requested from the app or any branch."
        )

    if task == BankingTask.INTEREST_RATE_INQUIRY:
        loan_rates = data.get("loan_rates") or {}
        parts = [f"Savings: {data.get('savings_rate')}%"]
        parts.extend(f"{name.title()} loan: {rate}%" for name, rate in loan_rates.items())
        parts.append(f"Credit card: {data.get('credit_card_rate')}%")
        return "Our current interest rates are " + ", ".join(parts) + "."

    if task == BankingTask.GENERAL_INQUIRY:
        return str(data.get("answer") or NO_ANSWER_TEXT)

    logger.warning("No formatter for task %s; returning raw result", task)
    return json.dumps(result, default=str)[:500]


def format_tool_failure(error: Optional[Dict[str, Any]], retry_possible: bool) -> str:
    text = TOOL_FAILURE_TEXT
    message = (error or {}).get("message")
    if message:
        text += f" {message.rstrip('.')}."
    if retry_possible:
        text += f" {RETRY_HINT}"
    return text
