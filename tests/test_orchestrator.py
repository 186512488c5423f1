import asyncio
from unittest.mock import AsyncMock

import pytest

from banking_orchestrator.agent import helpers
from banking_orchestrator.agent.orchestrator import ConversationOrchestrator
from banking_orchestrator.agent.task_catalog import TASK_CATALOG
from banking_orchestrator.clients.mock_bank_client import MockBankClient
from banking_orchestrator.clients.rag_client import RAGConnector
from banking_orchestrator.context.conversation import BankingTask, Phase, ToolCallStatus
from banking_orchestrator.errors import ConfigurationError, ModelCallError, ToolExecutionError, ValidationError
from banking_orchestrator.gemini_llm_client import ModelReply, ModelToolRequest
from banking_orchestrator.schemas.rag import RAGSearchResult
from banking_orchestrator.tools.banking import LoanApplicationTool, TransactionHistoryTool
from banking_orchestrator.tools.registry import ToolRegistry, build_tool_registry
from conftest import FakeLLMClient, classification, wait_until

CONV = "conv-1"
USER = "user123"


async def start_loan(orch: ConversationOrchestrator) -> None:
    """Drive a loan conversation up to the confirmation prompt."""
    await orch.process_message(CONV, USER, "I want a $25,000 car loan")
    result = await orch.process_message(CONV, USER, "36 months")
    assert result.context.state.phase == Phase.CONFIRMATION


class TestArguments:
    async def test_blank_arguments_rejected(self, make_orchestrator, llm):
        orch = make_orchestrator(llm)
        with pytest.raises(ValidationError):
            await orch.process_message("", USER, "hello")
        with pytest.raises(ValidationError):
            await orch.process_message(CONV, "  ", "hello")
        with pytest.raises(ValidationError):
            await orch.process_message(CONV, USER, "")
        assert len(orch.sessions) == 0

    async def test_missing_model_client_is_configuration_error(self, tools):
        orch = ConversationOrchestrator(None, tools)
        with pytest.raises(ConfigurationError):
            await orch.process_message(CONV, USER, "hello")

    def test_unknown_busy_policy(self, tools, llm):
        with pytest.raises(ValueError):
            ConversationOrchestrator(llm, tools, busy_policy="drop")


class TestReadOnlyTasks:
    async def test_greeting_then_balance(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("balance_inquiry")])
        orch = make_orchestrator(llm)

        first = await orch.process_message(CONV, USER, "Hello")
        assert first.response == helpers.GREETING_TEXT
        assert first.context.state.phase == Phase.INTENT_DETECTION
        assert llm.prompts == []

        second = await orch.process_message(CONV, USER, "What's my balance?")
        assert second.response == "Your checking account balance is $15,420.50."
        ctx = second.context
        assert ctx.state.phase == Phase.COMPLETION
        assert ctx.state.current_task is None
        assert ctx.current_intent == "balance_inquiry"
        assert ctx.task_progress.completed is True
        assert [m.role for m in ctx.messages] == ["user", "assistant", "user", "assistant"]

        calls = ctx.tool_calls()
        assert len(calls) == 1
        assert calls[0].name == "get_account_balance"
        assert calls[0].status == ToolCallStatus.SUCCESS
        assert ctx.messages[-1].metadata.tool_calls[0].id == calls[0].id
        assert ctx.messages[-2].metadata.intent == "balance_inquiry"
        assert ctx.messages[-2].metadata.confidence == pytest.approx(0.95)

    async def test_transaction_history_with_period_in_first_message(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("transaction_history")])
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "Show my transactions for the last 7 days")

        assert result.response.startswith("Here are your 5 transactions for the last 7 days:")
        call = result.context.tool_calls()[0]
        assert call.parameters == {"time_period": {"type": "days", "value": 7}}

    async def test_statement_asks_for_period(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("account_statement")])
        orch = make_orchestrator(llm)

        first = await orch.process_message(CONV, USER, "I need an account statement")
        assert first.context.state.phase == Phase.INFORMATION_GATHERING
        assert first.context.state.required_fields == ["time_period"]
        assert "Which period" in first.response

        second = await orch.process_message(CONV, USER, "last month please")
        assert second.response.startswith("Account statement for last month")
        assert second.context.state.phase == Phase.COMPLETION

    async def test_question_back_does_not_fill_the_period(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("account_statement")])
        orch = make_orchestrator(llm)
        await orch.process_message(CONV, USER, "I need an account statement")

        result = await orch.process_message(CONV, USER, "why do you need that?")

        assert result.context.state.phase == Phase.INFORMATION_GATHERING
        assert result.context.state.required_fields == ["time_period"]
        assert result.context.tool_calls() == []
        assert result.response.startswith("Sorry, I didn't catch that.")
        assert "Which period" in result.response

    async def test_unreadable_model_period_is_explained(self, make_orchestrator):
        llm = FakeLLMClient(
            classifications=[classification("account_statement")],
            entity_outputs=[{"time_period": "whenever suits"}],
        )
        orch = make_orchestrator(llm)
        await orch.process_message(CONV, USER, "I need an account statement")

        result = await orch.process_message(CONV, USER, "whenever suits")

        assert result.context.state.phase == Phase.INFORMATION_GATHERING
        assert result.context.tool_calls() == []
        assert result.response.startswith("Please tell me which period you need")

    async def test_completion_starts_a_new_task(self, make_orchestrator):
        llm = FakeLLMClient(
            classifications=[classification("balance_inquiry"), classification("balance_inquiry")]
        )
        orch = make_orchestrator(llm)

        await orch.process_message(CONV, USER, "balance please")
        result = await orch.process_message(CONV, USER, "and again?")

        assert result.context.state.phase == Phase.COMPLETION
        assert len(result.context.tool_calls()) == 2
        assert len(llm.classification_prompts) == 2
        # history from the first turn reaches the second classification prompt
        assert "balance please" in llm.classification_prompts[1]


class TestIntentDetection:
    async def test_model_timeout_asks_for_clarification(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("balance_inquiry")], delay=0.2)
        orch = make_orchestrator(llm, model_timeout_seconds=0.05)

        result = await orch.process_message(CONV, USER, "What's my balance?")

        assert result.response == helpers.GENERIC_CLARIFICATION
        assert result.context.state.phase == Phase.INTENT_DETECTION
        assert result.context.state.pending_clarifications == [helpers.GENERIC_CLARIFICATION]
        assert result.context.tool_calls() == []
        assert len(result.context.messages) == 2

    async def test_low_confidence_keeps_intent_detection(self, make_orchestrator):
        llm = FakeLLMClient(
            classifications=[
                {
                    "intent": "loan_application",
                    "confidence": 0.3,
                    "entities": {},
                    "clarification_needed": True,
                    "clarification_question": "Do you want to apply for a loan?",
                }
            ]
        )
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "money stuff")

        assert result.response == "Do you want to apply for a loan?"
        assert result.context.state.phase == Phase.INTENT_DETECTION
        assert result.context.state.current_task is None
        assert result.context.messages[0].metadata.intent == "loan_application"

    async def test_repeated_unclear_turns_keep_one_pending_question(self, make_orchestrator):
        llm = FakeLLMClient(
            classifications=[
                {
                    "intent": "unknown",
                    "confidence": 0.2,
                    "clarification_needed": True,
                    "clarification_question": f"Question {i}?",
                }
                for i in range(5)
            ]
        )
        orch = make_orchestrator(llm)

        for _ in range(5):
            result = await orch.process_message(CONV, USER, "hmm")

        assert result.response == "Question 4?"
        assert result.context.state.pending_clarifications == ["Question 4?"]

    async def test_unparseable_model_output(self, make_orchestrator):
        llm = FakeLLMClient(classifications=["I think they want a loan"])
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "something")

        assert result.response == helpers.GENERIC_CLARIFICATION
        assert result.context.state.phase == Phase.INTENT_DETECTION

    async def test_unexpected_error_resets_dialogue(self, make_orchestrator, llm):
        orch = make_orchestrator(llm)
        orch.classifier.classify = AsyncMock(side_effect=RuntimeError("boom"))

        result = await orch.process_message(CONV, USER, "balance")

        assert result.response == helpers.APOLOGY_TEXT
        assert result.context.state.phase == Phase.INTENT_DETECTION
        assert [m.role for m in result.context.messages] == ["user", "assistant"]


class TestLoanApplication:
    async def test_full_flow(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application", 0.92)])
        orch = make_orchestrator(llm)

        first = await orch.process_message(CONV, USER, "I want a $25,000 car loan")
        assert first.context.state.phase == Phase.INFORMATION_GATHERING
        assert first.context.state.collected_fields == {"amount": 25000, "purpose": "car"}
        assert first.context.state.required_fields == ["tenure"]
        assert first.response == "Over how many months would you like to repay the loan?"

        second = await orch.process_message(CONV, USER, "36 months")
        assert second.context.state.phase == Phase.CONFIRMATION
        assert "- Amount: $25,000" in second.response
        assert "- Tenure: 36 months" in second.response
        assert bank.loan_applications == {}

        third = await orch.process_message(CONV, USER, "yes")
        assert third.context.state.phase == Phase.COMPLETION
        assert "has been submitted" in third.response
        assert len(bank.loan_applications) == 1
        application = next(iter(bank.loan_applications.values()))
        assert application["amount"] == 25000
        assert application["purpose"] == "car"
        assert application["tenure"] == 36
        assert application["application_id"] in third.response

        calls = third.context.tool_calls()
        assert [c.name for c in calls] == ["apply_loan"]
        assert calls[0].parameters == {"amount": 25000, "purpose": "car", "tenure": 36}

    async def test_cancel_during_gathering(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)

        await orch.process_message(CONV, USER, "I want a $25,000 car loan")
        result = await orch.process_message(CONV, USER, "actually, cancel that")

        assert result.response == helpers.CANCELLED_TEXT
        assert result.context.state.phase == Phase.COMPLETION
        assert result.context.state.collected_fields == {}
        assert result.context.tool_calls() == []
        assert bank.loan_applications == {}

    async def test_cancel_at_confirmation(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)
        await start_loan(orch)

        result = await orch.process_message(CONV, USER, "no, cancel")

        assert result.response == helpers.CANCELLED_TEXT
        assert result.context.state.phase == Phase.COMPLETION
        assert bank.loan_applications == {}

    async def test_deny_returns_to_gathering(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)
        await start_loan(orch)

        result = await orch.process_message(CONV, USER, "no")

        assert result.response == helpers.DENIED_TEXT
        assert result.context.state.phase == Phase.INFORMATION_GATHERING
        assert result.context.state.collected_fields["amount"] == 25000
        assert bank.loan_applications == {}

    async def test_no_problem_counts_as_confirmation(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)
        await start_loan(orch)

        result = await orch.process_message(CONV, USER, "no problem, go ahead")

        assert result.context.state.phase == Phase.COMPLETION
        assert len(bank.loan_applications) == 1

    async def test_correction_at_confirmation(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)
        await start_loan(orch)

        corrected = await orch.process_message(CONV, USER, "make it $30,000 instead")
        assert corrected.context.state.phase == Phase.CONFIRMATION
        assert corrected.context.state.collected_fields["amount"] == 30000
        assert corrected.response.startswith("Got it, I've updated that.")
        assert "- Amount: $30,000" in corrected.response
        assert bank.loan_applications == {}

        done = await orch.process_message(CONV, USER, "yes")
        assert done.context.state.phase == Phase.COMPLETION
        application = next(iter(bank.loan_applications.values()))
        assert application["amount"] == 30000

    async def test_model_extracted_correction(self, make_orchestrator, bank):
        llm = FakeLLMClient(
            classifications=[classification("loan_application")],
            entity_outputs=[{}, {"purpose": "home"}],
        )
        orch = make_orchestrator(llm)
        await start_loan(orch)

        result = await orch.process_message(CONV, USER, "it's for the flat we're buying")

        assert result.context.state.phase == Phase.CONFIRMATION
        assert result.context.state.collected_fields["purpose"] == "home"
        assert "- Purpose: home" in result.response

    async def test_unclear_reply_at_confirmation_reprompts(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)
        await start_loan(orch)

        result = await orch.process_message(CONV, USER, "hmm let me think")

        assert result.context.state.phase == Phase.CONFIRMATION
        assert result.response.endswith(helpers.CONFIRM_REPROMPT)
        assert bank.loan_applications == {}

    async def test_invalid_amount_is_explained(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "I need a $5,000,000 home loan")

        assert result.context.state.phase == Phase.INFORMATION_GATHERING
        assert "amount" not in result.context.state.collected_fields
        assert result.context.state.collected_fields["purpose"] == "home"
        assert result.response.startswith("The maximum loan amount is $1,000,000.")
        assert "How much would you like to borrow?" in result.response

    async def test_unrecognized_answer_repeats_question(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = make_orchestrator(llm)
        await orch.process_message(CONV, USER, "I want a $25,000 car loan")

        result = await orch.process_message(CONV, USER, "not sure yet")

        assert result.context.state.phase == Phase.INFORMATION_GATHERING
        assert result.response.startswith("Sorry, I didn't catch that.")
        assert result.response.endswith("Over how many months would you like to repay the loan?")

    async def test_extra_entities_never_fill_required_fields(self, make_orchestrator):
        llm = FakeLLMClient(
            classifications=[classification("loan_application", branch="downtown")],
        )
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "I want a $25,000 car loan")

        assert "branch" not in result.context.state.collected_fields
        assert result.context.task_progress.data["extra_entities"] == {"branch": "downtown"}
        assert result.context.entities["branch"] == "downtown"


class FlakyLoanTool(LoanApplicationTool):
    def __init__(self, bank, failures: int = 1):
        super().__init__(bank)
        self.failures = failures

    async def execute(self, params, *, user_id):
        if self.failures:
            self.failures -= 1
            raise ToolExecutionError("Core banking is temporarily unavailable", retryable=True)
        return await super().execute(params, user_id=user_id)


class FlakyHistoryTool(TransactionHistoryTool):
    def __init__(self, bank, failures: int = 1):
        super().__init__(bank)
        self.failures = failures

    async def execute(self, params, *, user_id):
        if self.failures:
            self.failures -= 1
            raise ToolExecutionError("core banking timeout", retryable=True)
        return await super().execute(params, user_id=user_id)


class TestExecutionFailures:
    async def test_retryable_failure_returns_to_confirmation(self, bank):
        llm = FakeLLMClient(classifications=[classification("loan_application")])
        orch = ConversationOrchestrator(llm, ToolRegistry([FlakyLoanTool(bank)]))
        await start_loan(orch)

        failed = await orch.process_message(CONV, USER, "yes")
        assert failed.context.state.phase == Phase.CONFIRMATION
        assert failed.response.startswith(helpers.TOOL_FAILURE_TEXT)
        assert "temporarily unavailable" in failed.response
        assert helpers.RETRY_HINT in failed.response
        assert failed.context.state.collected_fields == {"amount": 25000, "purpose": "car", "tenure": 36}
        call = failed.context.tool_calls()[0]
        assert call.status == ToolCallStatus.ERROR
        assert call.error["retryable"] is True

        retried = await orch.process_message(CONV, USER, "yes")
        assert retried.context.state.phase == Phase.COMPLETION
        assert len(bank.loan_applications) == 1
        assert [c.status for c in retried.context.tool_calls()] == [ToolCallStatus.ERROR, ToolCallStatus.SUCCESS]

    async def test_non_retryable_failure_completes(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("balance_inquiry")])
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, "ghost", "What's my balance?")

        assert result.context.state.phase == Phase.COMPLETION
        assert result.response.startswith(helpers.TOOL_FAILURE_TEXT)
        assert "User not found" in result.response
        assert helpers.RETRY_HINT not in result.response
        assert result.context.task_progress.completed is False

    async def test_tool_timeout(self):
        bank = MockBankClient(latency=0.2)
        llm = FakeLLMClient(classifications=[classification("balance_inquiry")])
        orch = ConversationOrchestrator(llm, build_tool_registry(bank, timeout=0.05))

        result = await orch.process_message(CONV, USER, "balance")

        call = result.context.tool_calls()[0]
        assert call.error["error_type"] == "timeout"
        assert result.context.state.phase == Phase.CONFIRMATION
        assert result.context.state.current_task.value == "balance_inquiry"
        assert helpers.RETRY_HINT in result.response

    async def test_retryable_read_only_failure_keeps_task(self, bank):
        llm = FakeLLMClient(classifications=[classification("transaction_history")])
        orch = ConversationOrchestrator(llm, ToolRegistry([FlakyHistoryTool(bank)]))

        failed = await orch.process_message(CONV, USER, "Show my transactions for the last 7 days")

        assert failed.context.state.phase == Phase.CONFIRMATION
        assert failed.context.state.current_task.value == "transaction_history"
        assert failed.context.state.collected_fields == {"time_period": {"type": "days", "value": 7}}
        assert failed.response.startswith(helpers.TOOL_FAILURE_TEXT)
        assert "core banking timeout" in failed.response
        assert helpers.RETRY_HINT in failed.response

        retried = await orch.process_message(CONV, USER, "yes")

        assert retried.context.state.phase == Phase.COMPLETION
        assert [c.status for c in retried.context.tool_calls()] == [ToolCallStatus.ERROR, ToolCallStatus.SUCCESS]
        assert retried.context.tool_calls()[1].parameters == {"time_period": {"type": "days", "value": 7}}

    async def test_retry_can_be_cancelled(self, bank):
        llm = FakeLLMClient(classifications=[classification("transaction_history")])
        orch = ConversationOrchestrator(llm, ToolRegistry([FlakyHistoryTool(bank)]))
        await orch.process_message(CONV, USER, "Show my transactions for the last 7 days")

        result = await orch.process_message(CONV, USER, "cancel")

        assert result.response == helpers.CANCELLED_TEXT
        assert result.context.state.phase == Phase.COMPLETION
        assert len(result.context.tool_calls()) == 1


class TestCardBlocking:
    async def test_all_fields_in_first_message(self, make_orchestrator, bank):
        llm = FakeLLMClient(classifications=[classification("card_blocking")])
        orch = make_orchestrator(llm)

        first = await orch.process_message(CONV, USER, "Block my debit card ending 4321, it was stolen")
        assert first.context.state.phase == Phase.CONFIRMATION
        assert first.context.state.collected_fields == {
            "card_type": "debit",
            "last_four_digits": "4321",
            "reason": "stolen",
        }

        done = await orch.process_message(CONV, USER, "yes please")
        assert done.response.startswith("Your debit card ending in 4321 has been blocked.")
        assert len(bank.card_blocks) == 1


class TestConversationalTasks:
    async def test_tool_round_then_answer(self, make_orchestrator, bank):
        llm = FakeLLMClient(
            classifications=[classification("interest_rate_inquiry")],
            replies=[
                ModelReply(tool_calls=[ModelToolRequest("get_interest_rates", {})]),
                ModelReply(text="Our savings rate is 2.5%."),
            ],
        )
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "What's your savings rate?")

        assert result.response == "Our savings rate is 2.5%."
        assert result.context.state.phase == Phase.COMPLETION
        assert len(llm.tool_rounds) == 2
        advertised = llm.tool_rounds[0]["tools"]
        assert "get_interest_rates" in advertised
        assert "apply_loan" not in advertised
        assert "block_card" not in advertised
        tool_turn = llm.tool_rounds[1]["messages"][-1]
        assert tool_turn["role"] == "tool"
        assert tool_turn["response"]["savings_rate"] == 2.5
        assert [c.name for c in result.context.tool_calls()] == ["get_interest_rates"]

    async def test_side_effect_tool_refused(self, make_orchestrator, bank):
        llm = FakeLLMClient(
            classifications=[classification("general_inquiry")],
            replies=[
                ModelReply(tool_calls=[ModelToolRequest("apply_loan", {"amount": 1000, "purpose": "car", "tenure": 12})]),
                ModelReply(text="I can help you apply for a loan step by step."),
            ],
        )
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "Can you just get me a loan?")

        assert bank.loan_applications == {}
        call = result.context.tool_calls()[0]
        assert call.status == ToolCallStatus.ERROR
        assert call.error["error_type"] == "tool_not_allowed"
        assert result.response == "I can help you apply for a loan step by step."

    async def test_round_limit(self, make_orchestrator):
        llm = FakeLLMClient(
            classifications=[classification("interest_rate_inquiry")],
            replies=[
                ModelReply(tool_calls=[ModelToolRequest("get_interest_rates", {})]),
                ModelReply(text="Rates are listed above."),
            ],
        )
        orch = make_orchestrator(llm, max_tool_rounds=1)

        result = await orch.process_message(CONV, USER, "rates?")

        assert result.response == "Rates are listed above."
        assert len(llm.tool_rounds) == 2
        assert llm.tool_rounds[1]["tools"] == []

    async def test_model_failure_falls_back_to_task_tool(self, make_orchestrator):
        llm = FakeLLMClient(
            classifications=[classification("general_inquiry")],
            tool_error=ModelCallError("backend down"),
        )
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "What are your branch hours?")

        assert "Monday-Friday" in result.response
        assert result.context.state.phase == Phase.COMPLETION
        assert [c.name for c in result.context.tool_calls()] == ["answer_general_inquiry"]

    async def test_empty_model_answer_falls_back_to_rates(self, make_orchestrator):
        llm = FakeLLMClient(classifications=[classification("interest_rate_inquiry")])
        orch = make_orchestrator(llm)

        result = await orch.process_message(CONV, USER, "What are your rates?")

        assert result.response.startswith("Our current interest rates are Savings: 2.5%")
        assert "Car loan: 5.8%" in result.response

    async def test_knowledge_base_answers_first(self, bank):
        class StaticBackend:
            async def search(self, query, top_k, threshold):
                return [
                    RAGSearchResult(id="a", text="Premium checking has no monthly fee.", similarity=0.91),
                    RAGSearchResult(id="b", text="Unrelated passage.", similarity=0.2),
                ]

            async def close(self):
                return None

        llm = FakeLLMClient(
            classifications=[classification("general_inquiry")],
            tool_error=ModelCallError("backend down"),
        )
        tools = build_tool_registry(bank, RAGConnector(StaticBackend()))
        orch = ConversationOrchestrator(llm, tools)

        result = await orch.process_message(CONV, USER, "Does premium checking have a fee?")

        assert result.response == "Premium checking has no monthly fee."
        assert [c.name for c in result.context.tool_calls()] == ["search_banking_context"]


FIELD_VALUES = {
    "amount": 25000,
    "purpose": "car",
    "tenure": 36,
    "card_type": "debit",
    "last_four_digits": "4321",
    "reason": "lost",
    "time_period": {"type": "days", "value": 30},
}
CONTRADICTING_VALUES = {
    "amount": 10000,
    "purpose": "home",
    "tenure": 12,
    "card_type": "credit",
    "last_four_digits": "1111",
    "reason": "stolen",
}


class TestEveryTask:
    @pytest.mark.parametrize("reverse", [False, True])
    @pytest.mark.parametrize("task", list(TASK_CATALOG), ids=lambda t: t.value)
    async def test_fields_in_any_order_reach_the_ready_phase(self, make_orchestrator, task, reverse):
        definition = TASK_CATALOG[task]
        order = list(reversed(definition.required_fields)) if reverse else list(definition.required_fields)
        turns = [{name: FIELD_VALUES[name]} for name in order]
        if len(order) > 1:
            # an earlier, contradicting value for the field answered last
            turns.insert(0, {order[-1]: CONTRADICTING_VALUES[order[-1]]})

        llm = FakeLLMClient(classifications=[classification(task.value)], entity_outputs=turns)
        orch = make_orchestrator(llm)
        result = await orch.process_message(CONV, USER, "I need some help with my account")
        for _ in turns:
            result = await orch.process_message(CONV, USER, "here you go")

        expected = {name: FIELD_VALUES[name] for name in definition.required_fields}
        state = result.context.state
        if definition.requires_confirmation:
            assert state.phase == Phase.CONFIRMATION
            assert state.required_fields == []
            assert expected.items() <= state.collected_fields.items()
        else:
            assert state.phase == Phase.COMPLETION
            call = result.context.tool_calls()[-1]
            assert call.status == ToolCallStatus.SUCCESS
            if expected:
                assert expected.items() <= call.parameters.items()


class TestConcurrency:
    async def test_wait_policy_serializes_turns(self, make_orchestrator):
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"), delay=0.05)
        orch = make_orchestrator(llm)

        first = asyncio.create_task(orch.process_message(CONV, USER, "first balance"))
        await wait_until(lambda: CONV in orch.sessions and orch.sessions.get(CONV).busy)
        second = asyncio.create_task(orch.process_message(CONV, USER, "second balance"))
        results = await asyncio.gather(first, second)

        assert all(r.response.startswith("Your checking account balance") for r in results)
        messages = orch.get_conversation(CONV).messages
        assert [m.content for m in messages[::2]] == ["first balance", "second balance"]
        assert [m.role for m in messages] == ["user", "assistant", "user", "assistant"]

    async def test_concurrent_follow_ups_merge_completely(self, make_orchestrator):
        follow_ups = ["$30,000", "48 months"]

        sequential = make_orchestrator(FakeLLMClient(classifications=[classification("loan_application")]))
        await sequential.process_message(CONV, USER, "I want a car loan")
        for message in follow_ups:
            expected = await sequential.process_message(CONV, USER, message)

        llm = FakeLLMClient(classifications=[classification("loan_application")], delay=0.03)
        orch = make_orchestrator(llm)
        await orch.process_message(CONV, USER, "I want a car loan")
        results = await asyncio.gather(*(orch.process_message(CONV, USER, m) for m in follow_ups))

        state = orch.get_conversation(CONV).state
        assert state.collected_fields == expected.context.state.collected_fields
        assert state.collected_fields == {"purpose": "car", "amount": 30000, "tenure": 48}
        loan = TASK_CATALOG[BankingTask.LOAN_APPLICATION]
        assert state.required_fields == [f for f in loan.required_fields if f not in state.collected_fields] == []
        assert state.phase == Phase.CONFIRMATION
        assert [r.context.state.phase for r in results] == [Phase.INFORMATION_GATHERING, Phase.CONFIRMATION]
        # each turn saw the previous turn's committed fields
        assert results[0].context.state.collected_fields == {"purpose": "car", "amount": 30000}
        assert len(orch.get_conversation(CONV).messages) == 6

    async def test_reject_policy(self, make_orchestrator):
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"), delay=0.05)
        orch = make_orchestrator(llm, busy_policy="reject")

        first = asyncio.create_task(orch.process_message(CONV, USER, "first balance"))
        await wait_until(lambda: CONV in orch.sessions and orch.sessions.get(CONV).busy)
        rejected = await orch.process_message(CONV, USER, "second balance")
        await first

        assert rejected.response == helpers.BUSY_TEXT
        assert len(orch.get_conversation(CONV).messages) == 2

    async def test_message_during_execution_gets_progress_reply(self):
        bank = MockBankClient(latency=0.1)
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"))
        orch = ConversationOrchestrator(llm, build_tool_registry(bank, timeout=2.0))

        first = asyncio.create_task(orch.process_message(CONV, USER, "balance"))
        await wait_until(
            lambda: CONV in orch.sessions and orch.sessions.get(CONV).active_phase == Phase.EXECUTION
        )
        interim = await orch.process_message(CONV, USER, "are you there?")
        done = await first

        assert interim.response == helpers.IN_PROGRESS_TEXT
        assert done.response.startswith("Your checking account balance")
        assert len(orch.get_conversation(CONV).messages) == 2

    async def test_separate_conversations_run_independently(self, make_orchestrator):
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"), delay=0.02)
        orch = make_orchestrator(llm)

        results = await asyncio.gather(
            *(orch.process_message(f"conv-{i}", USER, "balance") for i in range(5))
        )

        assert len(orch.sessions) == 5
        assert all(len(r.context.messages) == 2 for r in results)


class TestClearConversation:
    async def test_clear_twice_and_unknown(self, make_orchestrator):
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"))
        orch = make_orchestrator(llm)
        await orch.process_message(CONV, USER, "balance")

        await orch.clear_conversation(CONV)
        await orch.clear_conversation(CONV)
        await orch.clear_conversation("never-existed")

        assert orch.get_conversation(CONV) is None
        with pytest.raises(ValidationError):
            await orch.clear_conversation(" ")

    async def test_next_message_after_clear_starts_fresh(self, make_orchestrator):
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"))
        orch = make_orchestrator(llm)
        await orch.process_message(CONV, USER, "balance")
        await orch.clear_conversation(CONV)

        result = await orch.process_message(CONV, USER, "Hi")

        assert result.response == helpers.GREETING_TEXT
        assert len(result.context.messages) == 2

    async def test_delete_mid_turn_discards_result(self, make_orchestrator):
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"), delay=0.05)
        orch = make_orchestrator(llm)

        turn = asyncio.create_task(orch.process_message(CONV, USER, "balance"))
        await wait_until(lambda: CONV in orch.sessions and orch.sessions.get(CONV).busy)
        await orch.clear_conversation(CONV)
        result = await turn

        assert result.response.startswith("Your checking account balance")
        assert orch.get_conversation(CONV) is None

    async def test_queued_turn_after_delete_uses_fresh_context(self, make_orchestrator):
        llm = FakeLLMClient(default_classification=classification("balance_inquiry"), delay=0.05)
        orch = make_orchestrator(llm)

        first = asyncio.create_task(orch.process_message(CONV, USER, "first"))
        await wait_until(lambda: CONV in orch.sessions and orch.sessions.get(CONV).busy)
        old_entry = orch.sessions.get(CONV)
        second = asyncio.create_task(orch.process_message(CONV, USER, "second"))
        await asyncio.sleep(0.01)
        await orch.clear_conversation(CONV)
        await asyncio.gather(first, second)

        assert old_entry.closed
        messages = orch.get_conversation(CONV).messages
        assert [m.content for m in messages if m.role == "user"] == ["second"]
