"""
Entity Resolution Module
Extracts and resolves entities from user input
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..context.conversation import BankingTask

# Tagged entity value: string, number, boolean or a nested mapping
EntityValue = Union[bool, int, float, str, Dict[str, Any]]

ENTITY_ALIASES = {
    "loan_type": "purpose",
    "loan_purpose": "purpose",
    "loan_amount": "amount",
    "duration": "tenure",
    "term": "tenure",
    "loan_tenure": "tenure",
    "tenure_months": "tenure",
    "last4": "last_four_digits",
    "last_4_digits": "last_four_digits",
    "card_last_four_digits": "last_four_digits",
    "period": "time_period",
    "timeframe": "time_period",
    "time_frame": "time_period",
    "income": "monthly_income",
    "employment": "employment_status",
}

PURPOSE_KEYWORDS = [
    ("home", ("home", "house", "mortgage", "property", "apartment")),
    ("car", ("car", "vehicle", "auto")),
    ("business", ("business", "startup", "company")),
    ("education", ("education", "tuition", "college", "university", "student")),
    ("personal", ("personal",)),
]

CARD_TYPES = ("debit", "credit")

REASON_KEYWORDS = [
    ("stolen", ("stolen", "stole", "theft", "robbed")),
    ("lost", ("lost", "misplaced", "can't find", "cannot find")),
    ("damaged", ("damaged", "broken", "cracked", "not working")),
    ("suspicious_activity", ("suspicious", "fraud", "unauthorized", "unauthorised", "hacked")),
]

EMPLOYMENT_PATTERNS = [
    ("self_employed", r"\bself[- ]?employed\b|\bfreelanc\w*"),
    ("unemployed", r"\bunemployed\b|\bnot working\b|\bjobless\b"),
    ("retired", r"\bretired\b"),
    ("student", r"\bi(?:'m| am) a student\b"),
    ("employed", r"\bemployed\b|\bsalaried\b|\bfull[- ]time\b|\bpart[- ]time\b|\bi work\b"),
]

_NUM = r"\d{1,3}(?:,\d{3})+|\d+"
_MULTIPLIERS = {"k": 1_000, "thousand": 1_000, "lakh": 100_000, "m": 1_000_000, "million": 1_000_000}

TENURE_RE = re.compile(r"(?<![\d.])\b(\d{1,3}(?:\.\d+)?)\s*-?\s*(months?|mos?|mths?|years?|yrs?)\b", re.I)
INCOME_RE = re.compile(
    r"\b(?:income|salary|earn(?:ing)?s?)\b[^\d$]{0,25}"
    r"(?P<cur>[$₹£€])?\s?(?P<num>" + _NUM + r")(?:\.(?P<dec>\d{1,2}))?\s*(?P<mult>k|thousand|lakh)?\b",
    re.I,
)
# "4,000 a month" / "$5k per month" without an income keyword
MONTHLY_AMOUNT_RE = re.compile(
    r"(?<![\w.,$])(?P<cur>[$₹£€])?\s?(?P<num>" + _NUM + r")(?:\.(?P<dec>\d{1,2}))?\s*(?P<mult>k|thousand|lakh)?"
    r"\s*(?:a|per|/|each)\s*month\b",
    re.I,
)
CURRENCY_AMOUNT_RE = re.compile(
    r"(?P<cur>[$₹£€])\s?(?P<num>" + _NUM + r")(?:\.(?P<dec>\d{1,2}))?\s*(?P<mult>k|thousand|lakh|million|m)?\b",
    re.I,
)
WORD_AMOUNT_RE = re.compile(
    r"\b(?P<num>" + _NUM + r")(?:\.(?P<dec>\d{1,2}))?\s*(?:(?P<mult>k|thousand|lakh|million)\b|"
    r"(?:dollars|usd|rupees|inr|pounds)\b)",
    re.I,
)
GROUPED_AMOUNT_RE = re.compile(r"\b(?P<num>\d{1,3}(?:,\d{3})+)(?:\.(?P<dec>\d{1,2}))?\b")
BARE_NUMBER_RE = re.compile(r"(?P<num>" + _NUM + r")(?:\.(?P<dec>\d{1,2}))?\s*(?P<mult>k|thousand|lakh)?\b", re.I)
LAST_FOUR_CONTEXT_RE = re.compile(r"\b(?:ending|ends|last\s+(?:four|4)(?:\s+digits)?)\D{0,12}(\d{4})\b", re.I)
FOUR_DIGITS_RE = re.compile(r"(?<![$\d,.])\b(\d{4})\b(?![,.]\d)")

TIME_PERIOD_PATTERNS = [
    (re.compile(r"\b(?:last|past|previous)\s+(\d{1,3})\s+days?\b", re.I), "days"),
    (re.compile(r"\b(?:last|past|previous)\s+(\d{1,2})\s+months?\b", re.I), "months"),
    (re.compile(r"\bthis\s+month\b", re.I), "current_month"),
    (re.compile(r"\b(?:last|past|previous)\s+month\b", re.I), "last_month"),
    (re.compile(r"\b(?:last|past|previous)\s+week\b", re.I), "last_week"),
    (re.compile(r"\b(?:last|past|previous)\s+(?:year|12\s+months)\b", re.I), "last_year"),
]
PERIOD_TYPES = ("days", "months", "current_month", "last_month", "last_week", "last_year")
# "2 weeks", "90 days", "6 months", "1 year" without a leading "last"
PERIOD_SPAN_RE = re.compile(r"(?<![\d.])\b(\d{1,3})\s*(days?|weeks?|months?|years?)\b", re.I)


def parse_time_period(text: str) -> Optional[Dict[str, Any]]:
    """
    Interpret a period phrase as {"type": ..., "value": ...}. Returns None
    when the text does not describe a period the bank can filter by.
    """
    if not text:
        return None
    for pattern, period_type in TIME_PERIOD_PATTERNS:
        match = pattern.search(text)
        if match:
            value = int(match.group(1)) if match.groups() else 1
            return {"type": period_type, "value": value}

    match = PERIOD_SPAN_RE.search(text)
    if not match:
        return None
    count = int(match.group(1))
    unit = match.group(2).lower()
    if count < 1:
        return None
    if unit.startswith("day"):
        return {"type": "days", "value": count}
    if unit.startswith("week"):
        return {"type": "days", "value": count * 7}
    if unit.startswith("month"):
        return {"type": "months", "value": count}
    if count == 1:
        return {"type": "last_year", "value": 1}
    return {"type": "months", "value": count * 12}


def to_snake_case(key: str) -> str:
    key = re.sub(r"[\s\-]+", "_", str(key).strip())
    key = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", key)
    return key.lower()


def _coerce_value(value: Any) -> Optional[EntityValue]:
    if value is None:
        return None
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        nested = normalize_entities(value, apply_aliases=False)
        return nested or None
    if isinstance(value, (list, tuple, set)):
        parts = [str(v) for v in value if v is not None]
        return ", ".join(parts) if parts else None
    return str(value)


def normalize_entities(raw: Optional[Mapping[str, Any]], apply_aliases: bool = True) -> Dict[str, EntityValue]:
    """
    Normalize a model- or caller-supplied entity bag: snake_case keys, known
    aliases folded onto canonical field names, None and empty values dropped.
    """
    if not raw:
        return {}
    out: Dict[str, EntityValue] = {}
    for key, value in raw.items():
        if key is None:
            continue
        name = to_snake_case(key)
        if apply_aliases:
            name = ENTITY_ALIASES.get(name, name)
        coerced = _coerce_value(value)
        if coerced is None or (isinstance(coerced, str) and not coerced.strip()):
            continue
        out[name] = coerced
    return out


def parse_amount(num: str, dec: Optional[str] = None, mult: Optional[str] = None) -> Union[int, float]:
    value = float(num.replace(",", ""))
    if dec:
        value += float(f"0.{dec}")
    if mult:
        value *= _MULTIPLIERS.get(mult.lower(), 1)
    return int(value) if value == int(value) else round(value, 2)


def _blank_span(text: str, span: Tuple[int, int]) -> str:
    start, end = span
    return text[:start] + " " * (end - start) + text[end:]


def _find_keyword(text_lower: str, table: List[Tuple[str, Tuple[str, ...]]]) -> Optional[str]:
    for canonical, words in table:
        for word in words:
            if re.search(r"\b" + re.escape(word) + r"\b", text_lower):
                return canonical
    return None


class EntityResolver:
    """
    Extracts entities like amounts, tenure, card details and time periods
    from user messages.

    The resolver is deterministic. It provides the baseline the model's
    entities are merged over, and it is the only extractor left when the
    model call fails.
    """

    def extract_entities(
        self,
        text: str,
        intent: Optional[Union[BankingTask, str]],
        expected_field: Optional[str] = None,
    ) -> Dict[str, EntityValue]:
        """
        Extract relevant entities based on intent.

        ``expected_field`` is the field the assistant just asked for; a bare
        answer such as "36" or "5000" is attributed to it.
        """
        if not text:
            return {}
        task = intent.value if isinstance(intent, BankingTask) else intent

        if task == BankingTask.LOAN_APPLICATION.value:
            return self._loan_entities(text, expected_field)
        if task == BankingTask.CARD_BLOCKING.value:
            return self._card_entities(text, expected_field)
        if task in (BankingTask.ACCOUNT_STATEMENT.value, BankingTask.TRANSACTION_HISTORY.value):
            return self._period_entities(text)
        return {}

    # ------------------------------------------------------------------
    # Per-task extractors
    # ------------------------------------------------------------------
    def _loan_entities(self, text: str, expected_field: Optional[str]) -> Dict[str, EntityValue]:
        entities: Dict[str, EntityValue] = {}
        working = text
        lower = text.lower()

        tenure_match = TENURE_RE.search(working)
        if tenure_match:
            count = float(tenure_match.group(1))
            unit = tenure_match.group(2).lower()
            months = count * 12 if unit.startswith("y") else count
            # 2.5 years is 30 months; 2.5 months is not a tenure
            if months == int(months):
                entities["tenure"] = int(months)
            working = _blank_span(working, tenure_match.span())

        income_match = INCOME_RE.search(working) or MONTHLY_AMOUNT_RE.search(working)
        if income_match:
            entities["monthly_income"] = parse_amount(
                income_match.group("num"), income_match.group("dec"), income_match.group("mult")
            )
            working = _blank_span(working, income_match.span())

        amount = self._find_amount(working)
        if amount is not None:
            entities["amount"] = amount[0]
            working = _blank_span(working, amount[1])

        purpose = _find_keyword(lower, PURPOSE_KEYWORDS)
        if purpose:
            entities["purpose"] = purpose

        for status, pattern in EMPLOYMENT_PATTERNS:
            if re.search(pattern, lower):
                entities["employment_status"] = status
                break

        if expected_field and expected_field not in entities:
            bare = BARE_NUMBER_RE.search(working)
            if bare and expected_field in ("amount", "monthly_income"):
                entities[expected_field] = parse_amount(bare.group("num"), bare.group("dec"), bare.group("mult"))
            elif bare and expected_field == "tenure" and not bare.group("dec"):
                entities["tenure"] = int(bare.group("num").replace(",", ""))

        return entities

    def _card_entities(self, text: str, expected_field: Optional[str]) -> Dict[str, EntityValue]:
        entities: Dict[str, EntityValue] = {}
        lower = text.lower()

        for card_type in CARD_TYPES:
            if re.search(r"\b" + card_type + r"\b", lower):
                entities["card_type"] = card_type
                break

        match = LAST_FOUR_CONTEXT_RE.search(text)
        if match:
            entities["last_four_digits"] = match.group(1)
        else:
            digits = FOUR_DIGITS_RE.findall(text)
            if len(digits) == 1 and (expected_field == "last_four_digits" or "card" in lower):
                entities["last_four_digits"] = digits[0]

        reason = _find_keyword(lower, REASON_KEYWORDS)
        if reason:
            entities["reason"] = reason
        return entities

    def _period_entities(self, text: str) -> Dict[str, EntityValue]:
        period = parse_time_period(text)
        if period is None:
            return {}
        return {"time_period": period}

    @staticmethod
    def _find_amount(text: str) -> Optional[Tuple[Union[int, float], Tuple[int, int]]]:
        for pattern in (CURRENCY_AMOUNT_RE, WORD_AMOUNT_RE, GROUPED_AMOUNT_RE):
            match = pattern.search(text)
            if match:
                groups = match.groupdict()
                value = parse_amount(groups["num"], groups.get("dec"), groups.get("mult"))
                return value, match.span()
        return None
