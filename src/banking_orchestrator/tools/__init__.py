"""
Banking tools and the registry that dispatches them by name.
"""

from .base import BankingTool  # noqa: F401
from .registry import ToolRegistry, build_tool_registry  # noqa: F401
