"""
Resilient provider orchestration.

Runs an ordered list of text providers until one returns a schema-valid
StyleAnalysis:

1. Schema failures are repaired by re-prompting with the missing fields
   (up to max_schema_retries, fixed short pause).
2. Transient failures (overload, 429/503, quota, timeout) back off
   exponentially with jitter and retry the same provider.
3. Fatal failures, or an exhausted attempt budget, cascade to the next
   provider. A failed provider is never attempted again.

Both retry kinds draw on the same per-provider attempt budget. The loop
returns a tagged OrchestrationResult; generate() turns a failed result into
the single user-facing ProviderExhaustedError.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from config.constants import ANALYSIS_UNAVAILABLE_PREFIX, SERVICE_BUSY_MESSAGE
from core.errors import ProviderError, ProviderExhaustedError
from core.logging import get_logger
from styling.models import StyleAnalysis
from styling.prompts import AnalysisPrompt, build_repair_feedback
from styling.text_providers import classify_provider_error, extract_missing_fields

logger = get_logger(__name__)


class TextProvider(Protocol):
    name: str

    @property
    def available(self) -> bool: ...

    async def generate(
        self, prompt: AnalysisPrompt, repair_feedback: Optional[str] = None
    ) -> StyleAnalysis: ...


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """Backoff constants shared by every provider in the cascade."""
    max_schema_retries: int = 2
    schema_retry_delay_seconds: float = 0.5
    backoff_base_ms: int = 2000
    backoff_cap_ms: int = 32000
    backoff_jitter_ms: int = 1000

    def backoff_seconds(self, attempt: int, jitter: float) -> float:
        """min(base * 2^(attempt-1), cap) plus jitter in [0, jitter_ms)."""
        delay_ms = min(self.backoff_base_ms * (2 ** (attempt - 1)), self.backoff_cap_ms)
        return (delay_ms + jitter * self.backoff_jitter_ms) / 1000.0


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class ProviderSpec:
    """One entry in the cascade with its own attempt budget."""
    provider: TextProvider
    max_attempts: int

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(
                f"{self.provider.name}: max_attempts must be at least 1, got {self.max_attempts}"
            )

    @property
    def name(self) -> str:
        return self.provider.name


# =============================================================================
# Result
# =============================================================================

@dataclass
class AttemptRecord:
    provider: str
    attempt: int
    kind: str
    message: str


@dataclass
class OrchestrationResult:
    """Ok(value, provider) or Err(kind, message)."""
    value: Optional[StyleAnalysis] = None
    provider: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    attempts: List[AttemptRecord] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.value is not None

    @property
    def retryable(self) -> bool:
        return self.error_kind == "transient"


# =============================================================================
# Orchestrator
# =============================================================================

class ProviderOrchestrator:
    """
    Ordered provider cascade with schema repair and backoff.

    Usage:
        orchestrator = ProviderOrchestrator([
            ProviderSpec(gemini, max_attempts=3),
            ProviderSpec(groq, max_attempts=2),
        ])
        analysis = await orchestrator.generate(prompt)
    """

    def __init__(
        self,
        providers: List[ProviderSpec],
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ):
        self._providers = list(providers)
        self._policy = policy
        self._sleep = sleep
        self._jitter = jitter

    @property
    def providers(self) -> List[TextProvider]:
        return [spec.provider for spec in self._providers]

    @property
    def provider_names(self) -> List[str]:
        return [spec.name for spec in self._providers]

    async def run(self, prompt: AnalysisPrompt) -> OrchestrationResult:
        """Execute the cascade and return a tagged result (never raises provider errors)."""
        result = OrchestrationResult()
        start = time.perf_counter()
        last_error: Optional[ProviderError] = None

        for spec in self._providers:
            outcome = await self._run_provider(spec, prompt, result)
            if isinstance(outcome, StyleAnalysis):
                result.value = outcome
                result.provider = spec.name
                result.duration_ms = int((time.perf_counter() - start) * 1000)
                logger.info(
                    "Analysis generated",
                    provider=spec.name,
                    attempts=len(result.attempts) + 1,
                    duration_ms=result.duration_ms,
                )
                return result
            last_error = outcome
            logger.warning(
                "Provider exhausted, cascading",
                provider=spec.name,
                kind=outcome.kind,
                error=outcome.message[:200],
            )

        result.duration_ms = int((time.perf_counter() - start) * 1000)
        if last_error is None:
            result.error_kind = "fatal"
            result.error_message = "No text providers configured"
        else:
            result.error_kind = last_error.kind
            result.error_message = last_error.message
        return result

    async def _run_provider(
        self,
        spec: ProviderSpec,
        prompt: AnalysisPrompt,
        result: OrchestrationResult,
    ):
        """Returns a StyleAnalysis on success, otherwise the last ProviderError."""
        attempt = 0
        schema_retries = 0
        repair_feedback: Optional[str] = None
        last_error: Optional[ProviderError] = None

        while attempt < spec.max_attempts:
            if not spec.provider.available:
                return last_error or classify_provider_error(
                    Exception(f"{spec.name} temporarily unavailable: no usable credentials"),
                    spec.name,
                )

            attempt += 1
            try:
                return await spec.provider.generate(prompt, repair_feedback)
            except Exception as exc:
                error = classify_provider_error(exc, spec.name)

            last_error = error
            result.attempts.append(AttemptRecord(spec.name, attempt, error.kind, error.message[:300]))
            has_budget = attempt < spec.max_attempts

            if error.kind == "schema":
                if has_budget and schema_retries < self._policy.max_schema_retries:
                    schema_retries += 1
                    missing = extract_missing_fields(error.message) or error.missing_fields
                    repair_feedback = build_repair_feedback(missing)
                    logger.info(
                        "Schema repair retry",
                        provider=spec.name,
                        attempt=attempt,
                        missing_fields=missing,
                    )
                    await self._sleep(self._policy.schema_retry_delay_seconds)
                    continue
                return error

            if error.kind == "transient" and has_budget:
                delay = self._policy.backoff_seconds(attempt, self._jitter())
                logger.warning(
                    "Transient provider failure, backing off",
                    provider=spec.name,
                    attempt=attempt,
                    delay_ms=int(delay * 1000),
                    error=error.message[:200],
                )
                await self._sleep(delay)
                continue

            return error

        return last_error

    async def generate(self, prompt: AnalysisPrompt) -> StyleAnalysis:
        """
        Run the cascade and return the analysis tagged with its provider.

        Raises:
            ProviderExhaustedError: busy message when the last failure was
                retryable, otherwise the (sanitized) last error message
        """
        result = await self.run(prompt)
        if result.ok:
            return result.value.model_copy(update={"provider": result.provider})

        if result.retryable:
            raise ProviderExhaustedError(SERVICE_BUSY_MESSAGE, last_kind="transient", retryable=True)
        raise ProviderExhaustedError(
            f"{ANALYSIS_UNAVAILABLE_PREFIX}{result.error_message}",
            last_kind=result.error_kind or "fatal",
            retryable=False,
        )
