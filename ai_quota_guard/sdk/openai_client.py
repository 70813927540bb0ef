"""
Metered OpenAI summarization client.

Wraps chat completions in the admit/open/complete/fail protocol so every
outbound call is admitted against the caller's plan and recorded exactly once.
"""

import logging
import time
from typing import Any, List, Optional, Sequence

from openai import OpenAI

from ..core.engine import MeteringEngine
from ..core.errors import (
    AdmissionDeniedError,
    InputTooLargeError,
    ProtocolError,
    QuotaGuardError,
)
from ..core.plans import Plan
from ..core.rate_limiter import Subscriber
from ..core.token_counter import TokenUsage, estimate_tokens, token_budget

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "Summarize the user's text concisely, keeping the key facts."


class MeteredSummarizer:
    """OpenAI summarizer that charges each call to a subscriber's quota.

    Deny decisions surface as AdmissionDeniedError before any provider call
    is made. Provider errors close the usage event as failed and propagate
    unchanged, even when the failure cannot be recorded. Summaries are
    returned even if the reaper already closed the event.
    """

    def __init__(self, engine: MeteringEngine, model: str, client: Optional[Any] = None):
        """Initialize the summarizer.

        Args:
            engine: Metering engine used for admission and recording
            model: OpenAI model name (required)
            client: Optional preconfigured OpenAI client

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.engine = engine
        self.model = model
        self.client = client or OpenAI()

    def summarize(self, subscriber: Subscriber, text: str) -> str:
        """Summarize one text as one billable call.

        Raises:
            ValueError: If text is empty
            InputTooLargeError: If text exceeds the plan's input limit
            AdmissionDeniedError: If admission is denied
            OpenAI API errors: Propagated after the event is failed
        """
        if not text:
            raise ValueError("text is required and cannot be empty")
        plan = self._check_input_length(subscriber, [text])
        return self._run(subscriber, [text], False, plan)[0]

    def summarize_batch(self, subscriber: Subscriber, texts: Sequence[str]) -> List[str]:
        """Summarize several texts admitted and charged as one batch.

        Either every text is admitted or none is; a provider error on any
        item fails the whole batch event.
        """
        if not texts or any(not t for t in texts):
            raise ValueError("texts must be a non-empty list of non-empty strings")
        plan = self._check_input_length(subscriber, texts)
        return self._run(subscriber, list(texts), True, plan)

    def _check_input_length(self, subscriber: Subscriber, texts: Sequence[str]) -> Optional[Plan]:
        plan = self.engine.catalog.get_plan(subscriber.plan_code)
        if plan is None:
            # admission reports plan-not-found
            return None
        limit = plan.limits.max_input_length
        for text in texts:
            if len(text) > limit:
                raise InputTooLargeError(len(text), limit)
        return plan

    def _run(
        self,
        subscriber: Subscriber,
        texts: List[str],
        batch: bool,
        plan: Optional[Plan]
    ) -> List[str]:
        decision, event = self.engine.admit_and_open(
            subscriber, unit_count=len(texts), batch=batch
        )
        if not decision.allow:
            raise AdmissionDeniedError(decision)

        request_options = {}
        if plan is not None:
            request_options["max_tokens"] = token_budget(plan.limits.max_output_length)

        started = time.monotonic()
        summaries = []
        prompt_tokens = completion_tokens = 0
        try:
            for text in texts:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": text},
                    ],
                    **request_options,
                )
                summary = response.choices[0].message.content or ""
                usage = getattr(response, "usage", None)
                if usage is not None:
                    prompt_tokens += usage.prompt_tokens
                    completion_tokens += usage.completion_tokens
                else:
                    prompt_tokens += estimate_tokens(text)
                    completion_tokens += estimate_tokens(summary)
                summaries.append(summary)
        except Exception as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                "Summarization failed for user %s: %s", subscriber.user_id, type(e).__name__
            )
            try:
                self.engine.fail(event.id, type(e).__name__, response_time_ms=elapsed_ms)
            except QuotaGuardError as record_error:
                logger.error(
                    "Could not record failure of usage event %d: %s", event.id, record_error
                )
            raise

        try:
            self.engine.complete(
                event.id,
                response_time_ms=int((time.monotonic() - started) * 1000),
                tokens_used=TokenUsage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                ),
            )
        except ProtocolError as e:
            # closed by the reaper while the provider call was running
            logger.warning("Late completion of usage event %d ignored: %s", event.id, e)
        return summaries
