"""
Banking tools backed by the mock bank.
"""

from typing import Any, Dict

from ..clients.mock_bank_client import MockBankClient
from .base import BankingTool

_TIME_PERIOD_PARAM = {
    "type": "object",
    "required": False,
    "description": 'Period to cover, e.g. {"type": "days", "value": 30} or {"type": "last_month"}',
}


class _BankTool(BankingTool):
    def __init__(self, bank: MockBankClient):
        self.bank = bank


class AccountBalanceTool(_BankTool):
    name = "get_account_balance"
    description = "Get the customer's current account balance"
    params: Dict[str, Dict[str, Any]] = {}

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        return await self.bank.get_balance(user_id)


class TransactionHistoryTool(_BankTool):
    name = "get_transaction_history"
    description = "List the customer's transactions for a time period"
    params = {"time_period": _TIME_PERIOD_PARAM}

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        return await self.bank.get_transaction_history(user_id, params.get("time_period"))


class AccountStatementTool(_BankTool):
    name = "get_account_statement"
    description = "Generate an account statement with opening and closing balance for a time period"
    params = {"time_period": _TIME_PERIOD_PARAM}

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        return await self.bank.get_account_statement(user_id, params.get("time_period"))


class LoanApplicationTool(_BankTool):
    name = "apply_loan"
    description = "Submit a loan application (side effect)"
    read_only = False
    params = {
        "amount": {"type": "number", "required": True},
        "purpose": {"type": "string", "required": True, "enum": ["home", "car", "business", "education", "personal"]},
        "tenure": {"type": "integer", "required": True, "description": "Repayment period in months"},
        "employment_status": {"type": "string", "required": False},
        "monthly_income": {"type": "number", "required": False},
    }

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        return await self.bank.submit_loan_application(user_id, params)


class CardBlockTool(_BankTool):
    name = "block_card"
    description = "Block a debit or credit card (side effect)"
    read_only = False
    params = {
        "card_type": {"type": "string", "required": True, "enum": ["debit", "credit"]},
        "last_four_digits": {"type": "string", "required": True},
        "reason": {"type": "string", "required": True, "enum": ["lost", "stolen", "damaged", "suspicious_activity"]},
    }

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        return await self.bank.block_card(user_id, params)


class InterestRatesTool(_BankTool):
    name = "get_interest_rates"
    description = "Current savings, loan and credit card interest rates"
    params: Dict[str, Dict[str, Any]] = {}

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        return await self.bank.get_interest_rates()


class GeneralInquiryTool(_BankTool):
    name = "answer_general_inquiry"
    description = "Canned answers about branch hours, fees, ATMs and digital banking"
    params = {"question": {"type": "string", "required": True}}

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        return await self.bank.answer_general_inquiry(str(params["question"]))
