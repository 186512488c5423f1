INTENT_PROMPT_TEMPLATE = """
SYSTEM: You are the intent classifier for a retail bank's conversational assistant.
Classify the user's latest message into exactly one banking intent and extract any entities it carries.

Valid intents:
{intents}

Intent guide:
- loan_application: the user wants to apply for or take out a loan.
- card_blocking: the user wants to block, freeze or report a lost/stolen/damaged card.
- account_statement: the user wants a statement for a period.
- balance_inquiry: the user wants their current balance.
- transaction_history: the user wants to see recent transactions.
- interest_rate_inquiry: the user asks about interest rates.
- general_inquiry: any other banking question (fees, branches, products, how-to).

Entities to look for (snake_case keys, omit what is absent):
- amount (number), purpose (home|car|business|education|personal), tenure (months, integer)
- employment_status, monthly_income (number)
- card_type (debit|credit), last_four_digits (4-digit string), reason (lost|stolen|damaged|suspicious_activity)
- time_period ({{"type": "days"|"months"|"current_month"|"last_month", "value": <int>}} or a short string)

Conversation history (most recent turns):
{history}

User message:
{message}

Return ONLY a single JSON object (no extra text):
{{
  "intent": "<one of the valid intents or unknown>",
  "confidence": <number between 0 and 1>,
  "entities": {{}},
  "clarification_needed": true | false,
  "clarification_question": "<short question or null>"
}}

Rules:
- If the message could mean more than one intent, set clarification_needed = true and ask a short question.
- If the message is not a banking request at all, use intent "unknown".
- Never invent entity values the user did not give.
"""

ENTITY_PROMPT_TEMPLATE = """
SYSTEM: You extract structured fields for an in-progress banking task.

Task: {task}
Fields to extract: {fields}
The assistant last asked for: {expected_field}

Collected so far (JSON):
{collected_json}

Conversation history (most recent turns):
{history}

User message:
{message}

Return ONLY a single JSON object mapping field names to values for the fields the user's message provides.
Use snake_case keys from the list above. Omit fields the message does not mention. Return {{}} if none.
A bare answer (for example "36" or "yes, 5000") answers the field the assistant last asked for.
"""
