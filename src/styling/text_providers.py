"""
Text-generation providers for outfit analysis.

Two interchangeable backends produce a StyleAnalysis:

- GeminiProvider: Gemini REST generateContent over httpx, vision-capable,
  credentials rotated through a KeyPool on quota errors.
- GroqProvider: Groq's OpenAI-compatible endpoint through the openai SDK,
  text-only (works from client-extracted colors).

Providers raise the ProviderError taxonomy so the orchestrator can tell a
schema failure from a transient overload from anything else.
"""

import json
import re
import threading
from typing import List, Optional

import httpx
import openai
from pydantic import ValidationError as PydanticValidationError

from config.constants import MISSING_FIELD_PATTERN, RETRYABLE_ERROR_KEYWORDS, SCHEMA_ERROR_KEYWORD
from core.errors import (
    ProviderError,
    ProviderFatalError,
    ProviderSchemaError,
    ProviderTransientError,
)
from core.logging import get_logger
from styling.key_pool import KeyPool
from styling.models import StyleAnalysis
from styling.prompts import AnalysisPrompt

logger = get_logger(__name__)


# =============================================================================
# Error Classification
# =============================================================================

def extract_missing_fields(message: str) -> List[str]:
    """Field names reported as "required property 'x'" in a validator message."""
    seen: List[str] = []
    for name in re.findall(MISSING_FIELD_PATTERN, message or ""):
        if name not in seen:
            seen.append(name)
    return seen


def is_retryable_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(keyword in lowered for keyword in RETRYABLE_ERROR_KEYWORDS)


def classify_provider_error(exc: BaseException, provider: Optional[str] = None) -> ProviderError:
    """
    Map any exception raised by a provider onto the provider taxonomy.

    Typed provider errors pass through unchanged; everything else is
    classified by substring match on its message.
    """
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    if SCHEMA_ERROR_KEYWORD in lowered:
        return ProviderSchemaError(message, provider, extract_missing_fields(message))
    if is_retryable_message(lowered):
        return ProviderTransientError(message, provider)
    return ProviderFatalError(message, provider)


# =============================================================================
# Output Parsing
# =============================================================================

_FENCE_START = re.compile(r"^```[a-zA-Z0-9_-]*\s*")
_FENCE_END = re.compile(r"\s*```$")


def parse_analysis(raw_text: str, provider: str) -> StyleAnalysis:
    """
    Parse and validate provider output.

    Raises:
        ProviderSchemaError: listing every missing or incomplete field as
            "required property '<path>'"
    """
    text = (raw_text or "").strip()
    if text.startswith("```"):
        text = _FENCE_END.sub("", _FENCE_START.sub("", text)).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProviderSchemaError(
            f"Schema validation failed: response is not valid JSON ({e.msg})",
            provider,
        ) from e

    if not isinstance(data, dict):
        raise ProviderSchemaError("Schema validation failed: response is not a JSON object", provider)

    try:
        return StyleAnalysis.model_validate(data)
    except PydanticValidationError as e:
        problems = []
        fields = []
        for err in e.errors():
            path = ".".join(str(part) for part in err["loc"])
            fields.append(path)
            if err["type"] == "missing":
                problems.append(f"required property '{path}'")
            else:
                problems.append(f"required property '{path}' is incomplete ({err['msg']})")
        raise ProviderSchemaError(
            "Schema validation failed: " + "; ".join(problems),
            provider,
            missing_fields=fields,
        ) from e


# =============================================================================
# Gemini (REST)
# =============================================================================

class GeminiProvider:
    """Primary provider: Gemini generateContent with key rotation."""

    name = "gemini"

    GENERATION_CONFIG = {
        "temperature": 0.5,
        "maxOutputTokens": 1800,
        "topK": 30,
        "topP": 0.9,
        "responseMimeType": "application/json",
    }

    def __init__(
        self,
        key_pool: KeyPool,
        model: str,
        base_url: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._key_pool = key_pool
        self._model = model
        self._endpoint = f"{base_url.rstrip('/')}/{model}:generateContent"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def available(self) -> bool:
        return self._key_pool.has_available_keys()

    @property
    def key_pool(self) -> KeyPool:
        return self._key_pool

    def _build_payload(self, prompt: AnalysisPrompt, repair_feedback: Optional[str]) -> dict:
        parts = [{"text": prompt.render(repair_feedback)}]
        if prompt.image_base64:
            parts.append({
                "inline_data": {
                    "mime_type": prompt.image_mime_type,
                    "data": prompt.image_base64,
                }
            })
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": dict(self.GENERATION_CONFIG),
        }

    async def _post(self, api_key: str, payload: dict) -> httpx.Response:
        return await self._client.post(
            self._endpoint,
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            json=payload,
        )

    async def generate(
        self, prompt: AnalysisPrompt, repair_feedback: Optional[str] = None
    ) -> StyleAnalysis:
        api_key = self._key_pool.get_next_available_key()
        if api_key is None:
            raise ProviderTransientError("Gemini quota exhausted on every key", self.name)

        try:
            resp = await self._post(api_key, self._build_payload(prompt, repair_feedback))
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Gemini request timeout: {e}", self.name) from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(
                f"Gemini temporarily unavailable: {type(e).__name__}", self.name
            ) from e

        self._key_pool.increment_current_usage()

        if resp.status_code != 200:
            body = resp.text[:300]
            if resp.status_code == 429 or "quota" in body.lower() or "resource_exhausted" in body.lower():
                self._key_pool.mark_exhausted(api_key)
                raise ProviderTransientError(f"Gemini 429 quota exceeded: {body}", self.name)
            if resp.status_code >= 500:
                raise ProviderTransientError(
                    f"Gemini {resp.status_code} temporarily unavailable: {body}", self.name
                )
            error = classify_provider_error(
                Exception(f"Gemini HTTP {resp.status_code}: {body}"), self.name
            )
            raise error

        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise ProviderFatalError(
                f"Gemini returned no candidates (blockReason={feedback.get('blockReason')})",
                self.name,
            )
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text:
            raise ProviderFatalError(
                f"Gemini returned empty content (finishReason={candidates[0].get('finishReason')})",
                self.name,
            )

        analysis = parse_analysis(text, self.name)
        return analysis.model_copy(update={"provider": self.name})

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# Groq (OpenAI-compatible)
# =============================================================================

_GROQ_SYSTEM_PROMPT = (
    "You are a professional fashion stylist. You cannot see the photo; rely on "
    "the detected colors and context provided. Respond with JSON only."
)


class GroqProvider:
    """Secondary provider: Groq chat completions in JSON mode."""

    name = "groq"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float = 30.0,
    ):
        self._client = None
        self._client_lock = threading.Lock()
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._timeout = timeout_seconds

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    @property
    def client(self) -> openai.AsyncOpenAI:
        """Lazy-load the OpenAI-compatible client."""
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    self._client = openai.AsyncOpenAI(
                        api_key=self._api_key,
                        base_url=self._base_url,
                        timeout=self._timeout,
                        max_retries=0,
                    )
        return self._client

    async def generate(
        self, prompt: AnalysisPrompt, repair_feedback: Optional[str] = None
    ) -> StyleAnalysis:
        try:
            response = await self.client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": _GROQ_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt.render(repair_feedback)},
                ],
                temperature=0.7,
                max_tokens=2048,
                response_format={"type": "json_object"},
            )
        except openai.RateLimitError as e:
            raise ProviderTransientError(f"Groq 429 rate limit: {e}", self.name) from e
        except openai.APITimeoutError as e:
            raise ProviderTransientError(f"Groq request timeout: {e}", self.name) from e
        except openai.APIConnectionError as e:
            raise ProviderTransientError(f"Groq temporarily unavailable: {e}", self.name) from e
        except openai.InternalServerError as e:
            raise ProviderTransientError(f"Groq 503 overloaded: {e}", self.name) from e
        except openai.APIError as e:
            raise classify_provider_error(e, self.name) from e

        raw = response.choices[0].message.content if response.choices else None
        if not raw:
            raise ProviderFatalError("Groq returned an empty response", self.name)

        analysis = parse_analysis(raw, self.name)
        return analysis.model_copy(update={"provider": self.name})

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
