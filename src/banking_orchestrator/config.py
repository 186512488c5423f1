"""
Configuration management for the orchestrator.

Settings come from environment variables (a local .env file is loaded first)
and are collected into a single dataclass that the app wires through.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigurationError

load_dotenv(find_dotenv(usecwd=True), override=False)

BUSY_POLICIES = ("wait", "reject")


@dataclass
class OrchestratorSettings:
    """Runtime settings for the conversation orchestrator."""
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_embed_model: str = "text-embedding-004"
    intent_confidence_threshold: float = 0.6
    model_timeout_seconds: float = 20.0
    tool_timeout_seconds: float = 10.0
    max_tool_rounds: int = 3
    session_timeout_minutes: int = 30
    session_busy_policy: str = "wait"
    rag_base_url: Optional[str] = None
    rag_default_top_k: int = 5
    rag_default_threshold: float = 0.5
    knowledge_base_path: Optional[str] = None
    log_level: str = "INFO"
    log_dir: str = "logs"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def load_settings() -> OrchestratorSettings:
    """
    Build settings from the environment.

    GEMINI_API_KEY may also be supplied as GENAI_API_KEY or GEMINI_TOKEN.
    """
    api_key = (
        os.getenv("GEMINI_API_KEY")
        or os.getenv("GENAI_API_KEY")
        or os.getenv("GEMINI_TOKEN")
    )

    busy_policy = os.getenv("SESSION_BUSY_POLICY", "wait").strip().lower()
    if busy_policy not in BUSY_POLICIES:
        raise ConfigurationError(
            f"SESSION_BUSY_POLICY must be one of {', '.join(BUSY_POLICIES)}, got {busy_policy!r}"
        )

    threshold = _env_float("INTENT_CONFIDENCE_THRESHOLD", 0.6)
    if not 0.0 <= threshold <= 1.0:
        raise ConfigurationError("INTENT_CONFIDENCE_THRESHOLD must be within [0, 1]")

    return OrchestratorSettings(
        gemini_api_key=api_key or None,
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        gemini_embed_model=os.getenv("GEMINI_EMBED_MODEL", "text-embedding-004"),
        intent_confidence_threshold=threshold,
        model_timeout_seconds=_env_float("MODEL_TIMEOUT_SECONDS", 20.0),
        tool_timeout_seconds=_env_float("TOOL_TIMEOUT_SECONDS", 10.0),
        max_tool_rounds=_env_int("MAX_TOOL_ROUNDS", 3),
        session_timeout_minutes=_env_int("SESSION_TIMEOUT_MINUTES", 30),
        session_busy_policy=busy_policy,
        rag_base_url=(os.getenv("RAG_BASE_URL") or "").rstrip("/") or None,
        rag_default_top_k=_env_int("RAG_DEFAULT_TOP_K", 5),
        rag_default_threshold=_env_float("RAG_DEFAULT_THRESHOLD", 0.5),
        knowledge_base_path=os.getenv("KNOWLEDGE_BASE_PATH") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_dir=os.getenv("LOG_DIR", "logs"),
    )
