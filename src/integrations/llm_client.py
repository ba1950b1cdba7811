"""
Gemini client for structured JSON generation and embeddings.

Transient failures (rate limits, 5xx, timeouts) are retried with exponential
backoff. Context-window overflows are never retried here: they surface as
ContextLengthError so the caller can shrink its excerpt budget and retry once.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Protocol

from loguru import logger

from config import get_settings
from src.pipeline.errors import ContextLengthError, LLMError, is_context_length_error


class LLMClient(Protocol):
    """What stages need from a language model."""

    async def generate_json(
        self, system: str, user: str, schema_name: str, schema: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def parse_json_object(raw: str) -> dict[str, Any]:
    """
    Parse a model response into a JSON object.

    Tries the whole text, then a fenced code block, then the outermost
    ``{...}`` span.

    Raises:
        LLMError: If no JSON object can be recovered.
    """
    raw = (raw or "").strip()
    candidates = [raw]
    code = _CODE_BLOCK_RE.search(raw)
    if code:
        candidates.append(code.group(1).strip())
    obj = _JSON_OBJECT_RE.search(raw)
    if obj:
        candidates.append(obj.group(0))
    for candidate in candidates:
        if not candidate:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise LLMError(f"response is not a JSON object: {raw[:200]}")


def _is_transient(exc: BaseException) -> bool:
    from google.api_core import exceptions as gexc

    return isinstance(
        exc,
        (
            gexc.ResourceExhausted,
            gexc.ServiceUnavailable,
            gexc.DeadlineExceeded,
            gexc.InternalServerError,
            asyncio.TimeoutError,
            ConnectionError,
        ),
    )


class GeminiClient:
    """
    JSON generation and embeddings over google-generativeai.

    Example:
        >>> client = GeminiClient()
        >>> obj = await client.generate_json(system, user, "concept_inventory", schema)
        >>> vectors = await client.embed(["TCP handshake", "Subnetting"])
    """

    def __init__(
        self,
        api_key: str | None = None,
        model_name: str | None = None,
        embedding_model: str | None = None,
        max_retries: int | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.ai_model
        self.embedding_model = embedding_model or settings.embedding_model
        self.max_retries = max(1, max_retries or settings.llm_max_retries)
        self.temperature = settings.llm_temperature
        self.max_output_tokens = settings.llm_max_output_tokens
        self._configured = False

        if not self.api_key:
            raise ValueError("Gemini API key required")

    def _genai(self):
        import google.generativeai as genai

        if not self._configured:
            genai.configure(api_key=self.api_key)
            self._configured = True
        return genai

    def _model(self, system: str):
        genai = self._genai()
        return genai.GenerativeModel(model_name=self.model_name, system_instruction=system or None)

    async def _with_retry(self, op: str, call):
        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                return await call()
            except Exception as e:
                if is_context_length_error(e):
                    raise ContextLengthError(f"{op}: {e}") from e
                if not _is_transient(e):
                    raise LLMError(f"{op} failed: {e}") from e
                last_error = e
                wait_time = 2 ** attempt
                logger.warning(
                    f"{op} transient error on attempt {attempt + 1}/{self.max_retries}: {e}. "
                    f"Retrying in {wait_time}s..."
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)
        raise LLMError(f"{op} failed after {self.max_retries} attempts: {last_error}") from last_error

    async def generate_json(
        self, system: str, user: str, schema_name: str, schema: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Generate a JSON object conforming to ``schema``.

        Args:
            system: System instruction.
            user: User prompt.
            schema_name: Name used in logs and in the prompt.
            schema: JSON schema embedded in the prompt.

        Returns:
            Parsed JSON object.
        """
        prompt = (
            f"{user}\n\n"
            f"Return ONLY a JSON object named {schema_name} matching this JSON schema:\n"
            f"{json.dumps(schema, ensure_ascii=False)}"
        )
        model = self._model(system)

        async def call() -> dict[str, Any]:
            response = await model.generate_content_async(
                prompt,
                generation_config={
                    "temperature": self.temperature,
                    "max_output_tokens": self.max_output_tokens,
                    "response_mime_type": "application/json",
                },
            )
            if not response.text:
                raise LLMError(f"{schema_name}: empty response")
            return parse_json_object(response.text)

        return await self._with_retry(f"generate_json[{schema_name}]", call)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in one request; returns one vector per input."""
        if not texts:
            return []
        genai = self._genai()

        async def call() -> list[list[float]]:
            result = await asyncio.to_thread(
                genai.embed_content,
                model=self.embedding_model,
                content=list(texts),
                task_type="retrieval_document",
            )
            vectors = result["embedding"]
            if vectors and isinstance(vectors[0], (int, float)):
                vectors = [vectors]
            return [[float(x) for x in v] for v in vectors]

        return await self._with_retry("embed", call)
