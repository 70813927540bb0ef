"""
Unit tests for SDK layer.

Tests the metered summarizer's admission, recording, and failure handling
with a mocked OpenAI client.
"""

from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from ai_quota_guard.core.errors import (
    AdmissionDeniedError,
    InputTooLargeError,
    LedgerUnavailableError,
)
from ai_quota_guard.core.plans import PlanCode
from ai_quota_guard.core.rate_limiter import DenyReason, Subscriber
from ai_quota_guard.sdk.openai_client import MeteredSummarizer
from ai_quota_guard.storage.models import EventState, utc_now

from conftest import build_plan

USER = Subscriber(user_id="u1", plan_code="basic")


def _response(content="A short summary.", prompt_tokens=100, completion_tokens=20):
    response = Mock()
    response.choices = [Mock(message=Mock(content=content))]
    if prompt_tokens is None:
        response.usage = None
    else:
        response.usage = Mock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return response


class TestMeteredSummarizer:
    """Test MeteredSummarizer behavior."""

    def setup_method(self):
        self.client = Mock()
        self.client.chat.completions.create.return_value = _response()

    def test_init_missing_model(self, make_engine):
        engine = make_engine(build_plan())
        with pytest.raises(ValueError, match="model is required"):
            MeteredSummarizer(engine, model="", client=self.client)

    @patch('ai_quota_guard.sdk.openai_client.OpenAI')
    def test_default_client(self, mock_openai_class, make_engine):
        mock_openai_class.return_value = Mock()
        summarizer = MeteredSummarizer(make_engine(build_plan()), model="gpt-4o-mini")
        assert summarizer.client is mock_openai_class.return_value

    def test_success_records_completed_event(self, make_engine, repository):
        engine = make_engine(build_plan())
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        summary = summarizer.summarize(USER, "Long article text.")

        assert summary == "A short summary."
        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][-1] == {"role": "user", "content": "Long article text."}
        # default max_output_length of 1000 characters
        assert kwargs["max_tokens"] == 250

        events, total = repository.get_history("u1")
        assert total == 1
        event = events[0]
        assert event.state == EventState.COMPLETED
        assert event.tokens_used.prompt_tokens == 100
        assert event.tokens_used.completion_tokens == 20
        assert event.response_time_ms is not None
        assert repository.get_quota_state("u1").monthly_calls == 1

    def test_missing_usage_falls_back_to_estimate(self, make_engine, repository):
        self.client.chat.completions.create.return_value = _response(
            content="abcdefgh", prompt_tokens=None
        )
        engine = make_engine(build_plan())
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        summarizer.summarize(USER, "x" * 400)

        event = repository.get_history("u1")[0][0]
        assert event.tokens_used.prompt_tokens == 100
        assert event.tokens_used.completion_tokens == 2

    def test_provider_error_fails_event_and_propagates(self, make_engine, repository):
        self.client.chat.completions.create.side_effect = TimeoutError("upstream timeout")
        engine = make_engine(build_plan())
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        with pytest.raises(TimeoutError, match="upstream timeout"):
            summarizer.summarize(USER, "text")

        event = repository.get_history("u1")[0][0]
        assert event.state == EventState.FAILED
        assert event.error_class == "TimeoutError"
        # attempts are charged
        assert repository.get_quota_state("u1").monthly_calls == 1

    def test_denied_call_never_reaches_provider(self, make_engine):
        engine = make_engine(build_plan(monthly=0))
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        with pytest.raises(AdmissionDeniedError) as exc_info:
            summarizer.summarize(USER, "text")

        assert exc_info.value.decision.reason == DenyReason.MONTHLY_LIMIT_EXCEEDED
        self.client.chat.completions.create.assert_not_called()

    def test_input_too_large(self, make_engine, repository):
        engine = make_engine(build_plan(max_input_length=10))
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        with pytest.raises(InputTooLargeError) as exc_info:
            summarizer.summarize(USER, "x" * 11)

        assert exc_info.value.limit == 10
        self.client.chat.completions.create.assert_not_called()
        assert repository.get_quota_state("u1") is None

    def test_output_limit_caps_completion_tokens(self, make_engine):
        engine = make_engine(build_plan(max_output_length=200))
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        summarizer.summarize(USER, "text")

        assert self.client.chat.completions.create.call_args.kwargs["max_tokens"] == 50

    def test_empty_text_rejected(self, make_engine):
        summarizer = MeteredSummarizer(make_engine(build_plan()), "gpt-4o-mini", self.client)
        with pytest.raises(ValueError):
            summarizer.summarize(USER, "")


class TestBatchSummaries:
    """Test batches admitted and charged as one unit."""

    def setup_method(self):
        self.client = Mock()
        self.client.chat.completions.create.return_value = _response()

    def test_batch_is_one_event(self, make_engine, repository):
        engine = make_engine(build_plan(batch_size=5, batch_processing=True))
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        summaries = summarizer.summarize_batch(USER, ["one", "two", "three"])

        assert len(summaries) == 3
        assert self.client.chat.completions.create.call_count == 3
        events, total = repository.get_history("u1")
        assert total == 1
        assert events[0].unit_count == 3
        assert events[0].tokens_used.total_tokens == 360
        assert repository.get_quota_state("u1").monthly_calls == 3

    def test_batch_on_plan_without_batching(self, make_engine):
        engine = make_engine(build_plan(code=PlanCode.FREE))
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        with pytest.raises(AdmissionDeniedError) as exc_info:
            summarizer.summarize_batch(Subscriber("u1", "free"), ["one", "two"])
        assert exc_info.value.decision.reason == DenyReason.BATCH_NOT_SUPPORTED

    def test_item_failure_fails_whole_batch(self, make_engine, repository):
        self.client.chat.completions.create.side_effect = [_response(), RuntimeError("boom")]
        engine = make_engine(build_plan(batch_size=5, batch_processing=True))
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        with pytest.raises(RuntimeError):
            summarizer.summarize_batch(USER, ["one", "two"])

        event = repository.get_history("u1")[0][0]
        assert event.state == EventState.FAILED
        assert event.error_class == "RuntimeError"


class TestReaperRaces:
    """Test provider calls that outlive their pending event."""

    def setup_method(self):
        self.client = Mock()

    def _sweep_then(self, engine, outcome):
        def create(**kwargs):
            engine.reaper.sweep(now=utc_now() + timedelta(days=1))
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return create

    def test_late_completion_still_returns_summary(self, make_engine, repository):
        engine = make_engine(build_plan())
        self.client.chat.completions.create.side_effect = self._sweep_then(
            engine, _response(content="summary")
        )
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        assert summarizer.summarize(USER, "text") == "summary"

        event = repository.get_history("u1")[0][0]
        assert event.state == EventState.FAILED
        assert event.error_class == "timeout"

    def test_provider_error_survives_reaped_event(self, make_engine, repository):
        engine = make_engine(build_plan())
        self.client.chat.completions.create.side_effect = self._sweep_then(
            engine, TimeoutError("upstream timeout")
        )
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        with pytest.raises(TimeoutError, match="upstream timeout"):
            summarizer.summarize(USER, "text")

        event = repository.get_history("u1")[0][0]
        assert event.error_class == "timeout"

    def test_provider_error_survives_unavailable_ledger(self, make_engine):
        engine = make_engine(build_plan())
        self.client.chat.completions.create.side_effect = RuntimeError("boom")
        summarizer = MeteredSummarizer(engine, model="gpt-4o-mini", client=self.client)

        unavailable = LedgerUnavailableError("disk I/O error", "close_event")
        with patch.object(engine, "fail", side_effect=unavailable) as mock_fail:
            with pytest.raises(RuntimeError, match="boom"):
                summarizer.summarize(USER, "text")
        mock_fail.assert_called_once()
