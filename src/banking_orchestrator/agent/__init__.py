"""
Agent package:
- orchestrator.py: ConversationOrchestrator (turn sequencing)
- state_machine.py: pure phase transitions
- task_catalog.py / slot_filling.py: task definitions and field merging
- helpers.py: reply wording and formatting
"""

from .orchestrator import ConversationOrchestrator, TurnResult  # noqa: F401
