"""Gemini-based page analysis.

Sends one page of text to Gemini and parses the structured JSON reply
(summary, entities, keyPoints, sentiment).

Only rate-limit signals are retried, with exponential backoff starting at
the configured base delay and doubling per attempt. Any other failure is
raised on the first attempt.
"""

import asyncio
import json
import re
from collections.abc import Awaitable, Callable
from functools import lru_cache

import structlog
from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from orchestrator.core.config import get_settings
from orchestrator.models.page import AnalysisPayload
from orchestrator.services.exceptions import (
    AnalysisConfigurationError,
    AnalysisError,
    AnalysisRateLimitError,
)

logger = structlog.get_logger(__name__)

PAGE_ANALYSIS_PROMPT = """Analyze the following page of a document and respond with a single JSON object using exactly these keys:
- "summary": a concise summary of the page (2-3 sentences)
- "entities": a list of the people, organizations, places and dates mentioned
- "keyPoints": a list of the key points made on the page
- "sentiment": one of "positive", "negative", "neutral" or "mixed"

Respond with JSON only.

PAGE TEXT:
{text}
"""

# First {...} span in the reply; tolerates markdown fences and preambles
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

_RATE_LIMIT_MARKERS = ("429", "resource exhausted", "resource_exhausted", "quota", "rate limit")


def is_rate_limit_error(error: Exception) -> bool:
    """Check whether an analysis error is a rate-limit signal."""
    if isinstance(error, google_exceptions.ResourceExhausted | google_exceptions.TooManyRequests):
        return True
    error_str = str(error).lower()
    return any(marker in error_str for marker in _RATE_LIMIT_MARKERS)


class AnalysisService:
    """Analyze page text with Gemini.

    Example:
        >>> service = AnalysisService()
        >>> payload = await service.analyze_page("Quarterly revenue grew 12%...")
        >>> payload.sentiment
        'positive'
    """

    def __init__(
        self,
        model: object | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the analysis service.

        Args:
            model: Optional pre-built GenerativeModel (tests inject a mock).
            max_attempts: Total attempts on rate limit, including the first.
            base_delay: Seconds before the first retry; doubles each retry.
            max_delay: Upper bound for a single backoff.
            sleep: Awaitable sleep used between attempts.
        """
        settings = get_settings()
        self._model = model
        self._owns_model = model is None
        self._event_loop_id: int | None = None
        self.api_key = settings.gemini_api_key
        self.model_name = settings.gemini_model
        self.max_text_length = settings.analysis_max_text_length
        self.max_attempts = max_attempts or settings.analysis_max_attempts
        self.base_delay = settings.analysis_retry_base_delay if base_delay is None else base_delay
        self.max_delay = settings.analysis_retry_max_delay if max_delay is None else max_delay
        self._sleep = sleep

    def _get_current_loop_id(self) -> int | None:
        """Get the ID of the current event loop, or None if no loop is running."""
        try:
            return id(asyncio.get_running_loop())
        except RuntimeError:
            return None

    @property
    def model(self):
        """Get or create Gemini model instance.

        The google.generativeai client holds gRPC state bound to the event
        loop, so the model is rebuilt when a new loop is detected.

        Raises:
            AnalysisConfigurationError: If API key is not configured.
        """
        loop_id = self._get_current_loop_id()
        if self._owns_model and self._model is not None and self._event_loop_id != loop_id:
            logger.debug("analysis_model_loop_changed", model=self.model_name)
            self._model = None

        if self._model is None:
            if not self.api_key:
                raise AnalysisConfigurationError(
                    "Gemini API key not configured. Set GEMINI_API_KEY environment variable."
                )

            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model_name)
            self._event_loop_id = loop_id
            logger.info("analysis_model_initialized", model=self.model_name)

        return self._model

    async def analyze_page(self, text: str) -> AnalysisPayload:
        """Analyze one page of text.

        Args:
            text: Extracted page text.

        Returns:
            Parsed AnalysisPayload.

        Raises:
            AnalysisRateLimitError: If every attempt was rate limited.
            AnalysisError: On any other failure.
        """
        if not text or not text.strip():
            logger.debug("analysis_empty_text")
            return AnalysisPayload()

        if len(text) > self.max_text_length:
            logger.warning(
                "analysis_text_truncated",
                original_length=len(text),
                max_length=self.max_text_length,
            )
            text = text[: self.max_text_length]

        prompt = PAGE_ANALYSIS_PROMPT.format(text=text)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(AnalysisRateLimitError),
            sleep=self._sleep,
            before_sleep=self._log_rate_limited,
            reraise=True,
        ):
            with attempt:
                return await self._generate(prompt)

    async def _generate(self, prompt: str) -> AnalysisPayload:
        model = self.model
        try:
            response = await model.generate_content_async(prompt)
            response_text = response.text
        except Exception as e:
            if is_rate_limit_error(e):
                raise AnalysisRateLimitError(f"Gemini rate limited: {e}") from e
            logger.error("analysis_request_failed", error=str(e))
            raise AnalysisError(f"Gemini request failed: {e}") from e

        return self._parse_response(response_text)

    def _parse_response(self, response_text: str | None) -> AnalysisPayload:
        """Parse the first JSON object in a Gemini reply."""
        match = _JSON_OBJECT.search(response_text or "")
        if match is None:
            raise AnalysisError("Gemini response contained no JSON object")

        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise AnalysisError(f"Gemini response is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise AnalysisError("Gemini response JSON is not an object")

        try:
            return AnalysisPayload.model_validate(data)
        except PydanticValidationError as e:
            raise AnalysisError(f"Gemini response has unexpected shape: {e}") from e

    def _log_rate_limited(self, retry_state) -> None:
        logger.warning(
            "analysis_rate_limited",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            retry_delay=retry_state.next_action.sleep if retry_state.next_action else None,
        )


@lru_cache(maxsize=1)
def get_analysis_service() -> AnalysisService:
    """Get or create the AnalysisService singleton."""
    return AnalysisService()
