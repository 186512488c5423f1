"""
Mock Bank Client
In-memory stand-in for the core banking backend
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..errors import ToolExecutionError

logger = logging.getLogger("banking_orchestrator.tools")

INTEREST_RATES = {
    "savings_rate": 2.5,
    "loan_rates": {
        "personal": 8.5,
        "home": 6.2,
        "car": 5.8,
        "business": 7.2,
        "education": 4.9,
    },
    "credit_card_rate": 18.9,
}

# (keywords, category, answer)
FAQ_ANSWERS = [
    (
        ("hours", "open"),
        "hours",
        "Our branches are open Monday-Friday 9:00 AM to 5:00 PM, and Saturday 9:00 AM to 1:00 PM. "
        "Online banking is available 24/7.",
    ),
    (
        ("fee", "charge"),
        "fees",
        "We offer various account types with different fee structures. Basic checking accounts have no "
        "monthly fee with a minimum balance of $500. Please visit our website or speak with a representative "
        "for detailed fee information.",
    ),
    (
        ("atm", "location"),
        "locations",
        "You can find ATM locations using our mobile app or website. We have over 2,000 ATMs nationwide.",
    ),
    (
        ("online", "mobile", "app"),
        "digital_services",
        "Our mobile app and online banking platform allow you to check balances, transfer funds, pay bills, "
        "deposit checks, and much more.",
    ),
]
DEFAULT_FAQ_ANSWER = (
    "I'd be happy to help you with your banking question. For specific account inquiries or detailed "
    "information, please contact our customer service or visit your nearest branch."
)


def _seed_users(now: datetime) -> Dict[str, Dict[str, Any]]:
    def day(offset: int) -> str:
        return (now - timedelta(days=offset)).date().isoformat()

    return {
        "user123": {
            "id": "user123",
            "name": "John Doe",
            "email": "john.doe@email.com",
            "account_number": "1234567890",
            "account_type": "checking",
            "balance": 15420.50,
            "currency": "USD",
            "credit_score": 720,
            "has_active_cards": True,
            "transactions": [
                {"id": "tx1", "amount": -45.50, "type": "debit", "description": "Coffee Shop Purchase", "date": day(1), "balance": 15420.50},
                {"id": "tx2", "amount": -120.00, "type": "debit", "description": "Grocery Store", "date": day(2), "balance": 15466.00},
                {"id": "tx3", "amount": 2500.00, "type": "credit", "description": "Salary Deposit", "date": day(3), "balance": 15586.00},
                {"id": "tx4", "amount": -85.30, "type": "debit", "description": "Electric Bill Payment", "date": day(4), "balance": 13086.00},
                {"id": "tx5", "amount": -350.00, "type": "debit", "description": "Rent Payment", "date": day(6), "balance": 13171.30},
            ],
        }
    }


def monthly_payment(principal: float, annual_rate: float, months: int) -> float:
    """Standard amortized monthly payment."""
    if months <= 0:
        return 0.0
    r = annual_rate / 100.0 / 12.0
    if r == 0:
        return round(principal / months, 2)
    return round(principal * r / (1 - (1 + r) ** -months), 2)


def period_start(period: Any, now: datetime) -> datetime:
    """Start of a time period. Defaults to the last 30 days."""
    if isinstance(period, dict):
        kind = period.get("type")
        value = int(period.get("value") or 1)
        if kind == "days":
            return now - timedelta(days=value)
        if kind == "months":
            return now - timedelta(days=30 * value)
        if kind == "current_month":
            return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if kind == "last_month":
            first = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            return (first - timedelta(days=1)).replace(day=1)
        if kind == "last_week":
            return now - timedelta(days=7)
        if kind == "last_year":
            return now - timedelta(days=365)
    if isinstance(period, str):
        period = period.lower()
        digits = "".join(ch for ch in period if ch.isdigit())
        count = int(digits) if digits else 1
        if "month" in period:
            return now - timedelta(days=30 * count)
        if "week" in period:
            return now - timedelta(days=7 * count)
        if "year" in period:
            return now - timedelta(days=365 * count)
        if "day" in period and digits:
            return now - timedelta(days=count)
    return now - timedelta(days=30)


def period_label(period: Any) -> str:
    if not period:
        return "the last 30 days"
    if isinstance(period, str):
        return period
    kind = period.get("type")
    value = period.get("value")
    labels = {
        "days": f"the last {value} days",
        "months": f"the last {value} months",
        "current_month": "this month",
        "last_month": "last month",
        "last_week": "the last week",
        "last_year": "the last year",
    }
    return labels.get(kind, "the last 30 days")


class MockBankClient:
    """
    In-memory mock bank. Keeps users, loan applications and card blocks for
    the lifetime of the process.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None, latency: float = 0.0):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.latency = latency
        self.users = _seed_users(self._clock())
        self.loan_applications: Dict[str, Dict[str, Any]] = {}
        self.card_blocks: Dict[str, Dict[str, Any]] = {}

    async def _simulate(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)

    def _user(self, user_id: str) -> Dict[str, Any]:
        user = self.users.get(user_id)
        if user is None:
            raise ToolExecutionError("User not found", retryable=False, detail={"user_id": user_id})
        return user

    def _filter_transactions(self, user: Dict[str, Any], period: Any) -> List[Dict[str, Any]]:
        start = period_start(period, self._clock()).date().isoformat()
        return [dict(tx) for tx in user["transactions"] if tx["date"] >= start]

    async def get_balance(self, user_id: str) -> Dict[str, Any]:
        await self._simulate()
        user = self._user(user_id)
        return {
            "account_number": user["account_number"],
            "account_type": user["account_type"],
            "balance": user["balance"],
            "available_balance": user["balance"],
            "currency": user["currency"],
        }

    async def get_transaction_history(self, user_id: str, time_period: Any = None) -> Dict[str, Any]:
        await self._simulate()
        user = self._user(user_id)
        transactions = self._filter_transactions(user, time_period)
        return {
            "transactions": transactions,
            "total_count": len(transactions),
            "period": period_label(time_period),
        }

    async def get_account_statement(self, user_id: str, time_period: Any = None) -> Dict[str, Any]:
        await self._simulate()
        user = self._user(user_id)
        transactions = self._filter_transactions(user, time_period)
        if transactions:
            oldest = transactions[-1]
            opening = round(oldest["balance"] - oldest["amount"], 2)
        else:
            opening = user["balance"]
        return {
            "account_number": user["account_number"],
            "period": period_label(time_period),
            "transactions": transactions,
            "opening_balance": opening,
            "closing_balance": user["balance"],
        }

    async def submit_loan_application(self, user_id: str, application: Dict[str, Any]) -> Dict[str, Any]:
        await self._simulate()
        user = self._user(user_id)
        purpose = application["purpose"]
        rate = INTEREST_RATES["loan_rates"].get(purpose, INTEREST_RATES["loan_rates"]["personal"])
        amount = float(application["amount"])
        tenure = int(application["tenure"])
        record = {
            "application_id": f"LN-{uuid.uuid4().hex[:8].upper()}",
            "user_id": user_id,
            "amount": amount,
            "purpose": purpose,
            "tenure": tenure,
            "employment_status": application.get("employment_status"),
            "monthly_income": application.get("monthly_income"),
            "credit_score": user.get("credit_score", 700),
            "interest_rate": rate,
            "estimated_monthly_payment": monthly_payment(amount, rate, tenure),
            "status": "submitted",
            "created_at": self._clock().isoformat(),
        }
        self.loan_applications[record["application_id"]] = record
        logger.info("Loan application %s submitted for user %s", record["application_id"], user_id)
        return dict(record)

    async def block_card(self, user_id: str, request: Dict[str, Any]) -> Dict[str, Any]:
        await self._simulate()
        user = self._user(user_id)
        if not user.get("has_active_cards"):
            raise ToolExecutionError("No active cards found for this account", retryable=False)
        record = {
            "request_id": f"CB-{uuid.uuid4().hex[:8].upper()}",
            "user_id": user_id,
            "card_type": str(request["card_type"]).lower(),
            "last_four_digits": request["last_four_digits"],
            "reason": str(request["reason"]).lower(),
            "status": "blocked",
            "created_at": self._clock().isoformat(),
        }
        self.card_blocks[record["request_id"]] = record
        logger.info("Card ending %s blocked for user %s", record["last_four_digits"], user_id)
        return dict(record)

    async def get_interest_rates(self) -> Dict[str, Any]:
        await self._simulate()
        return {
            "savings_rate": INTEREST_RATES["savings_rate"],
            "loan_rates": dict(INTEREST_RATES["loan_rates"]),
            "credit_card_rate": INTEREST_RATES["credit_card_rate"],
        }

    async def answer_general_inquiry(self, question: str) -> Dict[str, Any]:
        await self._simulate()
        lower = (question or "").lower()
        for keywords, category, answer in FAQ_ANSWERS:
            if any(word in lower for word in keywords):
                return {"answer": answer, "category": category}
        return {"answer": DEFAULT_FAQ_ANSWER, "category": "general"}
