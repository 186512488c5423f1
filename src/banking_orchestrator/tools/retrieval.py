from typing import Any, Dict

from ..clients.rag_client import RAGConnector
from .base import BankingTool


class BankingContextSearchTool(BankingTool):
    """Knowledge-base search. Returns the RAGSearchResponse as a dict."""

    name = "search_banking_context"
    description = "Search the bank's knowledge base for products, policies and procedures"
    params = {
        "query": {"type": "string", "required": True},
        "top_k": {"type": "integer", "required": False, "description": "Maximum results (1-20)"},
        "threshold": {"type": "number", "required": False, "description": "Minimum similarity (0-1)"},
    }

    def __init__(self, connector: RAGConnector):
        self.connector = connector

    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        top_k = params.get("top_k")
        threshold = params.get("threshold")
        response = await self.connector.search(
            str(params["query"]),
            top_k=int(top_k) if top_k is not None else None,
            threshold=float(threshold) if threshold is not None else None,
        )
        return response.model_dump()
