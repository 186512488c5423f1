"""
RAG (Retrieval-Augmented Generation) schemas
For searching banking context and information
"""

from typing import Any, Dict, List

from pydantic import BaseModel, Field

DEFAULT_TOP_K = 5
MAX_TOP_K = 20
DEFAULT_THRESHOLD = 0.5
MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 1000


class RAGSearchResult(BaseModel):
    id: str
    text: str
    similarity: float = Field(ge=0.0, le=1.0)
    # product, type, chunk_index plus any extra keys the backend attaches
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RAGSearchResponse(BaseModel):
    query: str
    results: List[RAGSearchResult] = Field(default_factory=list)
    total_results: int = 0
    search_time_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.results
