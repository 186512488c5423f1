"""
RAG Client
Semantic search over the banking knowledge base.

RAGConnector validates requests and ranks results. The backend does the
actual similarity search: either a remote RAG service over HTTP or an
in-memory numpy index over embedded markdown sections.
"""

import logging
import re
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
import numpy as np

from ..errors import RetrievalError, ValidationError
from ..schemas.rag import (
    DEFAULT_THRESHOLD,
    DEFAULT_TOP_K,
    MAX_QUERY_LENGTH,
    MAX_TOP_K,
    MIN_QUERY_LENGTH,
    RAGSearchResponse,
    RAGSearchResult,
)

logger = logging.getLogger("banking_orchestrator.rag")

MAX_SECTION_CHARS = 2000

Embedder = Callable[[List[str]], Awaitable[List[List[float]]]]


class RAGBackend(Protocol):
    async def search(self, query: str, top_k: int, threshold: float) -> List[RAGSearchResult]:
        ...

    async def close(self) -> None:
        ...


def rank_results(results: Sequence[RAGSearchResult], top_k: int, threshold: float) -> List[RAGSearchResult]:
    """
    Drop results below ``threshold``, order by descending similarity (ties
    keep their original order) and keep at most ``top_k``.
    """
    kept = [r for r in results if r.similarity >= threshold]
    kept = sorted(kept, key=lambda r: r.similarity, reverse=True)
    return kept[:top_k]


def _clamp_similarity(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if np.isnan(score):
        return 0.0
    return max(0.0, min(1.0, score))


class RAGConnector:
    """
    Entry point for knowledge-base search used by the search_banking_context tool.
    """

    def __init__(
        self,
        backend: RAGBackend,
        default_top_k: int = DEFAULT_TOP_K,
        default_threshold: float = DEFAULT_THRESHOLD,
    ):
        self.backend = backend
        self.default_top_k = default_top_k
        self.default_threshold = default_threshold

    def _validate(self, query: str, top_k: Optional[int], threshold: Optional[float]) -> Tuple[str, int, float]:
        text = (query or "").strip()
        if not MIN_QUERY_LENGTH <= len(text) <= MAX_QUERY_LENGTH:
            raise ValidationError(
                f"query must be between {MIN_QUERY_LENGTH} and {MAX_QUERY_LENGTH} characters"
            )
        k = self.default_top_k if top_k is None else top_k
        if isinstance(k, bool) or not isinstance(k, int) or not 1 <= k <= MAX_TOP_K:
            raise ValidationError(f"top_k must be an integer between 1 and {MAX_TOP_K}")
        t = self.default_threshold if threshold is None else threshold
        if isinstance(t, bool) or not isinstance(t, (int, float)) or not 0.0 <= t <= 1.0:
            raise ValidationError("threshold must be between 0 and 1")
        return text, k, float(t)

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> RAGSearchResponse:
        """
        Search the knowledge base.

        Raises ValidationError for bad arguments and RetrievalError when the
        backend fails. No results is a normal, empty response.
        """
        text, k, t = self._validate(query, top_k, threshold)
        started = time.perf_counter()
        try:
            raw = await self.backend.search(text, k, t)
        except RetrievalError:
            raise
        except Exception as e:
            logger.exception("RAG backend search failed: %s", e)
            raise RetrievalError(f"Knowledge base search failed: {e}") from e

        results = rank_results(raw, k, t)
        elapsed = round((time.perf_counter() - started) * 1000, 2)
        logger.info("RAG search %r -> %d result(s) in %sms", text[:80], len(results), elapsed)
        return RAGSearchResponse(
            query=text,
            results=results,
            total_results=len(results),
            search_time_ms=elapsed,
        )

    async def close(self) -> None:
        await self.backend.close()


class HttpRAGBackend:
    """
    Calls a remote RAG service: POST {base_url}/rag/search
    """

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def search(self, query: str, top_k: int, threshold: float) -> List[RAGSearchResult]:
        url = f"{self.base_url}/rag/search"
        try:
            response = await self.client.post(url, json={"query": query, "top_k": top_k, "threshold": threshold})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.exception("RAG HTTP request to %s failed: %s", url, e)
            raise RetrievalError(f"RAG service request failed: {e}") from e
        except ValueError as e:
            raise RetrievalError("RAG service returned invalid JSON") from e

        if not isinstance(payload, dict) or not payload.get("success", False):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise RetrievalError(message or "RAG service reported a failure")

        data = payload.get("data") or {}
        results = []
        for index, item in enumerate(data.get("results") or []):
            results.append(
                RAGSearchResult(
                    id=str(item.get("id", index)),
                    text=str(item.get("text", "")),
                    similarity=_clamp_similarity(item.get("similarity")),
                    metadata=dict(item.get("metadata") or {}),
                )
            )
        return results

    async def close(self) -> None:
        await self.client.aclose()


def split_markdown_sections(content: str, max_section_chars: int = MAX_SECTION_CHARS) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Split a markdown document into sections on '## ' headings. Sections
    longer than ``max_section_chars`` are split again on '### ' headings.
    """
    sections: List[Tuple[str, Dict[str, Any]]] = []
    main_sections = [s for s in re.split(r"(?=^## )", content or "", flags=re.M) if s.strip()]

    for i, raw_section in enumerate(main_sections):
        section = raw_section.strip()
        title_match = re.search(r"^## (.+)$", section, re.M)
        title = title_match.group(1).strip() if title_match else f"Section {i + 1}"

        if len(section) <= max_section_chars:
            sections.append((section, {"section": title, "section_index": i}))
            continue

        subsections = [s for s in re.split(r"(?=^### )", section, flags=re.M) if s.strip()]
        for j, raw_sub in enumerate(subsections):
            sub = raw_sub.strip()
            sub_match = re.search(r"^### (.+)$", sub, re.M)
            sub_title = sub_match.group(1).strip() if sub_match else f"Subsection {j + 1}"
            sections.append(
                (sub, {"section": title, "subsection": sub_title, "section_index": i, "subsection_index": j})
            )

    for chunk_index, (_, metadata) in enumerate(sections):
        metadata["chunk_index"] = chunk_index
        metadata["type"] = "knowledge_base"
        metadata["product"] = metadata.get("subsection") or metadata["section"]
    return sections


class InMemoryRAGBackend:
    """
    Brute-force cosine similarity over embedded documents held in memory.
    """

    def __init__(self, embedder: Embedder):
        self.embedder = embedder
        self._vectors: Optional[np.ndarray] = None
        self._documents: List[Tuple[str, str, Dict[str, Any]]] = []

    def __len__(self) -> int:
        return len(self._documents)

    async def _embed(self, texts: List[str]) -> np.ndarray:
        try:
            vectors = await self.embedder(texts)
        except Exception as e:
            logger.exception("Embedding %d text(s) failed: %s", len(texts), e)
            raise RetrievalError(f"Embedding failed: {e}") from e
        matrix = np.asarray(vectors, dtype=float)
        if matrix.ndim == 1:
            matrix = matrix.reshape(1, -1)
        if len(matrix) != len(texts):
            raise RetrievalError(f"Embedder returned {len(matrix)} vectors for {len(texts)} texts")
        return matrix

    async def add_documents(self, documents: Sequence[Tuple[str, Dict[str, Any]]]) -> int:
        """Embed and index (text, metadata) pairs. Returns the number added."""
        if not documents:
            return 0
        texts = [text for text, _ in documents]
        vectors = await self._embed(texts)
        start = len(self._documents)
        for offset, (text, metadata) in enumerate(documents):
            self._documents.append((f"doc-{start + offset}", text, dict(metadata)))
        self._vectors = vectors if self._vectors is None else np.vstack([self._vectors, vectors])
        return len(documents)

    async def load_markdown(self, path: str) -> int:
        content = Path(path).read_text(encoding="utf-8")
        sections = split_markdown_sections(content)
        added = await self.add_documents(sections)
        logger.info("Indexed %d knowledge-base section(s) from %s", added, path)
        return added

    async def search(self, query: str, top_k: int, threshold: float) -> List[RAGSearchResult]:
        if self._vectors is None or not self._documents:
            return []

        query_vec = (await self._embed([query]))[0]
        query_norm = np.linalg.norm(query_vec)
        if query_norm == 0:
            return []

        norms = np.linalg.norm(self._vectors, axis=1)
        similarities = np.zeros(len(self._documents))
        valid = norms > 0
        similarities[valid] = (self._vectors[valid] @ (query_vec / query_norm)) / norms[valid]

        return [
            RAGSearchResult(id=doc_id, text=text, similarity=_clamp_similarity(similarities[i]), metadata=dict(meta))
            for i, (doc_id, text, meta) in enumerate(self._documents)
        ]

    async def close(self) -> None:
        return None
