"""
Tests for the provider cascade: schema repair, backoff and failover.
"""

import pytest

from conftest import StubTextProvider, make_analysis_dict
from config.constants import ANALYSIS_UNAVAILABLE_PREFIX, SERVICE_BUSY_MESSAGE
from core.errors import (
    ProviderExhaustedError,
    ProviderFatalError,
    ProviderSchemaError,
    ProviderTransientError,
)
from styling.orchestrator import ProviderOrchestrator, ProviderSpec, RetryPolicy
from styling.prompts import AnalysisPrompt


@pytest.fixture
def prompt(photo_data_uri):
    return AnalysisPrompt(photo_data_uri=photo_data_uri, gender="male")


def build(specs, sleeps=None, policy=None):
    async def record_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return ProviderOrchestrator(
        specs,
        policy or RetryPolicy(),
        sleep=record_sleep,
        jitter=lambda: 0.0,
    )


class TestRetryPolicy:
    """Tests for the exponential backoff schedule."""

    def test_backoff_doubles(self):
        policy = RetryPolicy()
        assert policy.backoff_seconds(1, 0.0) == 2.0
        assert policy.backoff_seconds(2, 0.0) == 4.0
        assert policy.backoff_seconds(3, 0.0) == 8.0

    def test_backoff_capped(self):
        policy = RetryPolicy()
        assert policy.backoff_seconds(10, 0.0) == 32.0

    def test_jitter_added(self):
        policy = RetryPolicy()
        assert policy.backoff_seconds(1, 0.5) == 2.5


class TestProviderSpec:
    @pytest.mark.parametrize("attempts", [0, -1])
    def test_needs_at_least_one_attempt(self, attempts):
        with pytest.raises(ValueError, match="max_attempts"):
            ProviderSpec(StubTextProvider("gemini", [make_analysis_dict()]), attempts)

    def test_single_attempt_allowed(self):
        spec = ProviderSpec(StubTextProvider("gemini", [make_analysis_dict()]), 1)
        assert spec.name == "gemini"
        assert spec.max_attempts == 1


class TestCascade:
    """Tests for provider ordering and failover."""

    async def test_first_provider_success(self, prompt):
        primary = StubTextProvider("gemini", [make_analysis_dict()])
        secondary = StubTextProvider("groq", [make_analysis_dict()])
        orchestrator = build([ProviderSpec(primary, 3), ProviderSpec(secondary, 2)])

        analysis = await orchestrator.generate(prompt)

        assert analysis.provider == "gemini"
        assert len(primary.calls) == 1
        assert secondary.calls == []

    async def test_fatal_error_cascades_immediately(self, prompt):
        primary = StubTextProvider("gemini", [ProviderFatalError("invalid argument")])
        secondary = StubTextProvider("groq", [make_analysis_dict()])
        sleeps = []
        orchestrator = build([ProviderSpec(primary, 3), ProviderSpec(secondary, 2)], sleeps)

        result = await orchestrator.run(prompt)

        assert result.ok
        assert result.provider == "groq"
        assert len(primary.calls) == 1
        assert sleeps == []

    async def test_transient_retries_with_backoff(self, prompt):
        primary = StubTextProvider("gemini", [
            ProviderTransientError("503 overloaded"),
            ProviderTransientError("503 overloaded"),
            make_analysis_dict(),
        ])
        sleeps = []
        orchestrator = build([ProviderSpec(primary, 3)], sleeps)

        result = await orchestrator.run(prompt)

        assert result.ok
        assert sleeps == [2.0, 4.0]
        assert [a.kind for a in result.attempts] == ["transient", "transient"]

    async def test_untyped_errors_are_classified(self, prompt):
        primary = StubTextProvider("gemini", [RuntimeError("The model is overloaded"), make_analysis_dict()])
        sleeps = []
        orchestrator = build([ProviderSpec(primary, 3)], sleeps)

        result = await orchestrator.run(prompt)

        assert result.ok
        assert len(sleeps) == 1

    async def test_attempt_budget_then_cascade(self, prompt):
        primary = StubTextProvider("gemini", [ProviderTransientError("429 rate limit")])
        secondary = StubTextProvider("groq", [make_analysis_dict()])
        orchestrator = build([ProviderSpec(primary, 3), ProviderSpec(secondary, 2)])

        analysis = await orchestrator.generate(prompt)

        assert len(primary.calls) == 3
        assert analysis.provider == "groq"

    async def test_unavailable_provider_skipped(self, prompt):
        primary = StubTextProvider("gemini", [make_analysis_dict()], available=False)
        secondary = StubTextProvider("groq", [make_analysis_dict()])
        orchestrator = build([ProviderSpec(primary, 3), ProviderSpec(secondary, 2)])

        analysis = await orchestrator.generate(prompt)

        assert primary.calls == []
        assert analysis.provider == "groq"


class TestSchemaRepair:
    """Tests for re-prompting after schema validation failures."""

    async def test_repair_feedback_names_missing_fields(self, prompt):
        primary = StubTextProvider("gemini", [
            ProviderSchemaError(
                "Schema validation failed: required property 'feedback'; "
                "required property 'outfitRecommendations'"
            ),
            make_analysis_dict(),
        ])
        sleeps = []
        orchestrator = build([ProviderSpec(primary, 3)], sleeps)

        result = await orchestrator.run(prompt)

        assert result.ok
        assert primary.calls[0]["repair_feedback"] is None
        feedback = primary.calls[1]["repair_feedback"]
        assert "feedback" in feedback
        assert "outfitRecommendations" in feedback
        assert sleeps == [0.5]

    async def test_schema_retries_bounded(self, prompt):
        primary = StubTextProvider("gemini", [ProviderSchemaError("Schema validation failed: x")])
        secondary = StubTextProvider("groq", [make_analysis_dict()])
        orchestrator = build(
            [ProviderSpec(primary, 5), ProviderSpec(secondary, 2)],
            policy=RetryPolicy(max_schema_retries=2),
        )

        analysis = await orchestrator.generate(prompt)

        # initial attempt + 2 repairs, then cascade
        assert len(primary.calls) == 3
        assert analysis.provider == "groq"


class TestExhaustion:
    """Tests for the single user-facing error after every provider fails."""

    async def test_busy_message_when_last_error_transient(self, prompt):
        primary = StubTextProvider("gemini", [ProviderFatalError("bad request")])
        secondary = StubTextProvider("groq", [ProviderTransientError("503 overloaded")])
        orchestrator = build([ProviderSpec(primary, 3), ProviderSpec(secondary, 2)])

        with pytest.raises(ProviderExhaustedError) as exc_info:
            await orchestrator.generate(prompt)

        assert exc_info.value.message == SERVICE_BUSY_MESSAGE
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 500

    async def test_unavailable_message_when_last_error_fatal(self, prompt):
        primary = StubTextProvider("gemini", [ProviderFatalError("content blocked")])
        orchestrator = build([ProviderSpec(primary, 3)])

        with pytest.raises(ProviderExhaustedError) as exc_info:
            await orchestrator.generate(prompt)

        assert exc_info.value.message.startswith(ANALYSIS_UNAVAILABLE_PREFIX)
        assert "content blocked" in exc_info.value.message
        assert exc_info.value.retryable is False

    async def test_no_providers_configured(self, prompt):
        orchestrator = build([])

        result = await orchestrator.run(prompt)

        assert not result.ok
        assert result.error_kind == "fatal"

    async def test_provider_never_reattempted_after_cascade(self, prompt):
        primary = StubTextProvider("gemini", [ProviderFatalError("boom")])
        secondary = StubTextProvider("groq", [ProviderFatalError("boom")])
        orchestrator = build([ProviderSpec(primary, 3), ProviderSpec(secondary, 2)])

        with pytest.raises(ProviderExhaustedError):
            await orchestrator.generate(prompt)

        assert len(primary.calls) == 1
        assert len(secondary.calls) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
