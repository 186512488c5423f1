"""
Banking conversation orchestrator.

Routes free-text customer messages through intent classification, slot
filling, confirmation and tool execution, one dialogue turn at a time.
"""

__version__ = "1.0.0"
