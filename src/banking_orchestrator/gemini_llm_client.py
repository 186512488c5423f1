"""
Gemini LLM client for async use with the conversation orchestrator.

Exposes:
- async generate(prompt, max_tokens) -> str
- async generate_with_tools(messages, tools, system_instruction) -> ModelReply
- async embed(texts) -> List[List[float]]

Every SDK failure surfaces as ModelCallError so the orchestrator can fall
back; a missing API key is a ConfigurationError raised at construction.

Environment:
- GEMINI_API_KEY (or GENAI_API_KEY / GEMINI_TOKEN)
- GEMINI_MODEL (defaults to "gemini-2.5-flash")
- GEMINI_EMBED_MODEL (defaults to "text-embedding-004")
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types

from .errors import ConfigurationError, ModelCallError

logger = logging.getLogger("gemini_llm_client")

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_EMBED_MODEL = "text-embedding-004"


@dataclass
class ModelToolRequest:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelReply:
    text: str = ""
    tool_calls: List[ModelToolRequest] = field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


def _to_gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a JSON-schema fragment into the Gemini Schema dict shape."""
    out: Dict[str, Any] = {}
    if "type" in schema:
        out["type"] = str(schema["type"]).upper()
    for key in ("description", "enum", "required"):
        if key in schema:
            out[key] = schema[key]
    if "properties" in schema:
        out["properties"] = {k: _to_gemini_schema(v) for k, v in schema["properties"].items()}
    if "items" in schema:
        out["items"] = _to_gemini_schema(schema["items"])
    return out


class GeminiLLMClient:
    """
    Thin async wrapper over the google-genai SDK.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        embed_model: str = DEFAULT_EMBED_MODEL,
    ):
        self.api_key = api_key
        if not self.api_key:
            raise ConfigurationError(
                "Gemini API key not provided. Set GEMINI_API_KEY environment variable or pass api_key to GeminiLLMClient."
            )
        self.model = model
        self.embed_model = embed_model
        self.client = genai.Client(api_key=self.api_key)
        logger.info("Using google-genai SDK for Gemini LLM client (model=%s).", self.model)

    async def generate(self, prompt: str, max_tokens: int = 512) -> str:
        """
        Generate text using Gemini (async).
        """
        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=types.GenerateContentConfig(max_output_tokens=max_tokens),
            )
        except Exception as e:
            logger.exception("Gemini generate() failed: %s", e)
            raise ModelCallError(f"Gemini generate() failed: {e}") from e

        text = response.text
        if not text:
            logger.warning("Gemini generate() returned no text")
            raise ModelCallError("Gemini returned an empty response")
        return text

    async def generate_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        max_tokens: int = 512,
    ) -> ModelReply:
        """
        One function-calling round.

        ``messages`` is a neutral transcript of dicts:
          {"role": "user", "text": ...}
          {"role": "model", "text": ..., "tool_calls": [ModelToolRequest, ...]}
          {"role": "tool", "name": ..., "response": {...}}
        ``tools`` are descriptors {"name", "description", "parameters"}.
        """
        declarations = [
            types.FunctionDeclaration(
                name=tool["name"],
                description=tool.get("description", ""),
                parameters=_to_gemini_schema(tool.get("parameters") or {"type": "object", "properties": {}}),
            )
            for tool in tools
        ]
        config = types.GenerateContentConfig(
            system_instruction=system_instruction,
            max_output_tokens=max_tokens,
            tools=[types.Tool(function_declarations=declarations)] if declarations else None,
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=self._to_contents(messages),
                config=config,
            )
        except Exception as e:
            logger.exception("Gemini generate_with_tools() failed: %s", e)
            raise ModelCallError(f"Gemini function-calling request failed: {e}") from e

        calls = [
            ModelToolRequest(name=fc.name, arguments=dict(fc.args or {}))
            for fc in (response.function_calls or [])
            if fc.name
        ]
        text = "" if calls else (response.text or "")
        logger.info("Gemini tool round: %d tool call(s), %d chars of text", len(calls), len(text))
        return ModelReply(text=text, tool_calls=calls)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed a batch of texts."""
        if not texts:
            return []
        try:
            response = await self.client.aio.models.embed_content(
                model=self.embed_model,
                contents=texts,
            )
        except Exception as e:
            logger.exception("Gemini embed() failed: %s", e)
            raise ModelCallError(f"Gemini embedding request failed: {e}") from e
        return [list(embedding.values or []) for embedding in (response.embeddings or [])]

    @staticmethod
    def _to_contents(messages: List[Dict[str, Any]]) -> List[types.Content]:
        contents: List[types.Content] = []
        for msg in messages:
            role = msg.get("role")
            if role == "user":
                contents.append(types.Content(role="user", parts=[types.Part.from_text(text=msg.get("text", ""))]))
            elif role == "model":
                parts = []
                if msg.get("text"):
                    parts.append(types.Part.from_text(text=msg["text"]))
                for call in msg.get("tool_calls") or []:
                    parts.append(types.Part.from_function_call(name=call.name, args=call.arguments))
                if parts:
                    contents.append(types.Content(role="model", parts=parts))
            elif role == "tool":
                contents.append(
                    types.Content(
                        role="user",
                        parts=[types.Part.from_function_response(name=msg["name"], response=msg.get("response") or {})],
                    )
                )
        return contents
