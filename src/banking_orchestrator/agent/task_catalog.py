"""
Task catalog: the static description of every banking task the assistant
can drive, plus the per-field validators used while slots are filled.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from ..context.conversation import BankingTask
from ..nlu.entity_resolver import (
    BARE_NUMBER_RE,
    PERIOD_TYPES,
    PURPOSE_KEYWORDS,
    REASON_KEYWORDS,
    parse_amount,
    parse_time_period,
)

MAX_LOAN_AMOUNT = 1_000_000
MAX_TENURE_MONTHS = 360

LOAN_PURPOSES = ("home", "car", "business", "education", "personal")
CARD_TYPES = ("debit", "credit")
BLOCK_REASONS = ("lost", "stolen", "damaged", "suspicious_activity")
EMPLOYMENT_STATUSES = ("employed", "self_employed", "unemployed", "retired", "student")


class FieldValidationError(ValueError):
    """Raised by a field validator; the message is shown to the user."""


@dataclass(frozen=True)
class TaskStep:
    id: str
    name: str
    description: str
    required: bool = True


@dataclass(frozen=True)
class TaskDefinition:
    task: BankingTask
    name: str
    description: str
    required_fields: Tuple[str, ...]
    optional_fields: Tuple[str, ...] = ()
    steps: Tuple[TaskStep, ...] = ()
    tool_name: Optional[str] = None
    requires_confirmation: bool = False
    # read-only tasks may be served by the model's function-calling loop
    conversational: bool = False
    field_prompts: Dict[str, str] = field(default_factory=dict)

    @property
    def known_fields(self) -> Tuple[str, ...]:
        return self.required_fields + self.optional_fields


# ---------------------------------------------------------------------------
# Field validators: each returns the coerced value or raises
# FieldValidationError with a user-facing message.
# ---------------------------------------------------------------------------

def _to_number(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise FieldValidationError(f"Please give the {label} as a number.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = BARE_NUMBER_RE.search(value)
        if match:
            number = float(parse_amount(match.group("num"), match.group("dec"), match.group("mult")))
            return -number if value.strip().startswith("-") else number
    raise FieldValidationError(f"Please give the {label} as a number.")


def _whole(number: float) -> Any:
    return int(number) if number == int(number) else round(number, 2)


def validate_amount(value: Any) -> Any:
    amount = _to_number(value, "loan amount")
    if amount <= 0:
        raise FieldValidationError("The loan amount must be greater than zero.")
    if amount > MAX_LOAN_AMOUNT:
        raise FieldValidationError("The maximum loan amount is $1,000,000.")
    return _whole(amount)


def validate_monthly_income(value: Any) -> Any:
    income = _to_number(value, "monthly income")
    if income <= 0:
        raise FieldValidationError("Monthly income must be greater than zero.")
    return _whole(income)


def validate_tenure(value: Any) -> int:
    if isinstance(value, str):
        match = re.search(r"(?<![\d.])(\d+(?:\.\d+)?)\s*(years?|yrs?)?", value, re.I)
        if not match:
            raise FieldValidationError("Please give the loan tenure in months, for example 36 months.")
        number = float(match.group(1)) * (12 if match.group(2) else 1)
    else:
        number = _to_number(value, "loan tenure")
    if number != int(number):
        raise FieldValidationError("Please give the loan tenure as a whole number of months.")
    months = int(number)
    if not 1 <= months <= MAX_TENURE_MONTHS:
        raise FieldValidationError("Loan tenure must be between 1 and 360 months.")
    return months


def _choice(value: Any, allowed: Tuple[str, ...], synonyms, label: str) -> str:
    text = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if text in allowed:
        return text
    spaced = text.replace("_", " ")
    for canonical, words in synonyms:
        if any(re.search(r"\b" + re.escape(word) + r"\b", spaced) for word in words):
            return canonical
    options = ", ".join(a.replace("_", " ") for a in allowed)
    raise FieldValidationError(f"The {label} must be one of: {options}.")


def validate_purpose(value: Any) -> str:
    return _choice(value, LOAN_PURPOSES, PURPOSE_KEYWORDS, "loan purpose")


def validate_card_type(value: Any) -> str:
    return _choice(value, CARD_TYPES, [(c, (c,)) for c in CARD_TYPES], "card type")


def validate_reason(value: Any) -> str:
    return _choice(value, BLOCK_REASONS, REASON_KEYWORDS, "reason for blocking")


def validate_employment_status(value: Any) -> str:
    text = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    if text in EMPLOYMENT_STATUSES:
        return text
    raise FieldValidationError(
        "Employment status must be one of: " + ", ".join(s.replace("_", " ") for s in EMPLOYMENT_STATUSES) + "."
    )


def validate_last_four_digits(value: Any) -> str:
    if isinstance(value, bool):
        raise FieldValidationError("Please give exactly the last 4 digits of the card.")
    if isinstance(value, int):
        value = f"{value:04d}" if 0 <= value <= 9999 else str(value)
    text = re.sub(r"\s", "", str(value))
    if not re.fullmatch(r"\d{4}", text):
        raise FieldValidationError("Please give exactly the last 4 digits of the card.")
    return text


def validate_time_period(value: Any) -> Dict[str, Any]:
    period = None
    if isinstance(value, dict):
        if value.get("type") in PERIOD_TYPES:
            period = dict(value)
            try:
                period["value"] = int(period.get("value") or 1)
            except (TypeError, ValueError):
                period = None
    elif isinstance(value, str):
        period = parse_time_period(value)
    if period is None or period["value"] < 1:
        raise FieldValidationError("Please tell me which period you need, for example 'last 30 days'.")
    return period


FIELD_VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    "amount": validate_amount,
    "purpose": validate_purpose,
    "tenure": validate_tenure,
    "monthly_income": validate_monthly_income,
    "employment_status": validate_employment_status,
    "card_type": validate_card_type,
    "last_four_digits": validate_last_four_digits,
    "reason": validate_reason,
    "time_period": validate_time_period,
}


def coerce_field(name: str, value: Any) -> Any:
    """Validate and normalize one field value. Unknown field names pass through."""
    validator = FIELD_VALIDATORS.get(name)
    if validator is None:
        return value
    return validator(value)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

TASK_CATALOG: Dict[BankingTask, TaskDefinition] = {
    BankingTask.LOAN_APPLICATION: TaskDefinition(
        task=BankingTask.LOAN_APPLICATION,
        name="Loan Application",
        description="Apply for a personal, home, car, business or education loan",
        required_fields=("amount", "purpose", "tenure"),
        optional_fields=("employment_status", "monthly_income"),
        steps=(
            TaskStep("loan_details", "Loan Details", "Collect amount, purpose and tenure"),
            TaskStep("confirmation", "Confirmation", "Confirm the application details"),
            TaskStep("submission", "Submission", "Submit the application"),
        ),
        tool_name="apply_loan",
        requires_confirmation=True,
        field_prompts={
            "amount": "How much would you like to borrow?",
            "purpose": "What is the loan for? (home, car, business, education or personal)",
            "tenure": "Over how many months would you like to repay the loan?",
        },
    ),
    BankingTask.CARD_BLOCKING: TaskDefinition(
        task=BankingTask.CARD_BLOCKING,
        name="Card Blocking",
        description="Block a lost, stolen, damaged or compromised card",
        required_fields=("card_type", "last_four_digits", "reason"),
        steps=(
            TaskStep("card_details", "Card Details", "Identify the card to block"),
            TaskStep("confirmation", "Confirmation", "Confirm the block request"),
            TaskStep("block", "Block", "Block the card"),
        ),
        tool_name="block_card",
        requires_confirmation=True,
        field_prompts={
            "card_type": "Is it a debit card or a credit card?",
            "last_four_digits": "What are the last four digits of the card?",
            "reason": "Why do you need to block it? (lost, stolen, damaged or suspicious activity)",
        },
    ),
    BankingTask.ACCOUNT_STATEMENT: TaskDefinition(
        task=BankingTask.ACCOUNT_STATEMENT,
        name="Account Statement",
        description="Generate an account statement for a period",
        required_fields=("time_period",),
        steps=(
            TaskStep("period", "Period", "Collect the statement period"),
            TaskStep("generate", "Generate", "Generate the statement"),
        ),
        tool_name="get_account_statement",
        field_prompts={"time_period": "Which period should the statement cover? For example, last month or the last 90 days."},
    ),
    BankingTask.BALANCE_INQUIRY: TaskDefinition(
        task=BankingTask.BALANCE_INQUIRY,
        name="Balance Inquiry",
        description="Check the current account balance",
        required_fields=(),
        steps=(TaskStep("lookup", "Lookup", "Fetch the account balance"),),
        tool_name="get_account_balance",
    ),
    BankingTask.TRANSACTION_HISTORY: TaskDefinition(
        task=BankingTask.TRANSACTION_HISTORY,
        name="Transaction History",
        description="List recent transactions for a period",
        required_fields=("time_period",),
        steps=(
            TaskStep("period", "Period", "Collect the period"),
            TaskStep("lookup", "Lookup", "Fetch the transactions"),
        ),
        tool_name="get_transaction_history",
        field_prompts={"time_period": "For which period would you like to see transactions? For example, the last 7 days."},
    ),
    BankingTask.INTEREST_RATE_INQUIRY: TaskDefinition(
        task=BankingTask.INTEREST_RATE_INQUIRY,
        name="Interest Rate Inquiry",
        description="Current savings, loan and card interest rates",
        required_fields=(),
        steps=(TaskStep("lookup", "Lookup", "Fetch current rates"),),
        tool_name="get_interest_rates",
        conversational=True,
    ),
    BankingTask.GENERAL_INQUIRY: TaskDefinition(
        task=BankingTask.GENERAL_INQUIRY,
        name="General Inquiry",
        description="Answer general banking questions",
        required_fields=(),
        steps=(TaskStep("answer", "Answer", "Answer the question"),),
        tool_name="answer_general_inquiry",
        conversational=True,
    ),
}


def get_task(task: Any) -> Optional[TaskDefinition]:
    """Look up a task definition by enum or by its string value."""
    if isinstance(task, BankingTask):
        return TASK_CATALOG.get(task)
    try:
        return TASK_CATALOG.get(BankingTask(str(task)))
    except ValueError:
        return None


def field_question(definition: TaskDefinition, field_name: str) -> str:
    prompt = definition.field_prompts.get(field_name)
    if prompt:
        return prompt
    return f"Could you tell me the {field_name.replace('_', ' ')}?"
