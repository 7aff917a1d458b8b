from typing import Awaitable, Callable, Optional
from openai import AsyncOpenAI
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)
from invoice_service.core.config import get_settings
from invoice_service.core.exceptions import NormalizationError
from invoice_service.core.monitoring import NORMALIZATION_RETRIES, STAGE_PROCESSING_TIME, track_time
from invoice_service.models.invoice import InvoiceRecord
import asyncio
import json
import logging

logger = logging.getLogger(__name__)
settings = get_settings()

EXTRACTION_PROMPT = """Extract these fields from the invoice text:
InvoiceYear, InvoiceQuarter (1-4), InvoiceMonth (MM), InvoiceDate (DD),
InvoiceNumber, Category, Supplier, Description, VATRegion, Currency,
AmountInclVAT, AmountExVAT, VAT

Rules:
- Return a single JSON object using exactly these keys
- Use null for any field that is not found
- Monetary amounts must be numbers without currency symbols
- Infer Category, VATRegion and Currency if they are not explicit"""


def create_openai_client(base_url: Optional[str] = None) -> AsyncOpenAI:
    # SDK retries are disabled; normalize() is the only retry loop
    return AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=base_url or settings.OPENAI_BASE_URL,
        max_retries=0
    )


class TextNormalizationClient:
    """LLM stage: map extracted invoice text onto :class:`InvoiceRecord`.

    Any failure (API error, timeout, empty or malformed response) is retried
    with a linearly increasing delay, ``attempt x retry_delay`` seconds. Once
    the attempts are exhausted a :class:`NormalizationError` carrying the last
    underlying error is raised.
    """

    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.openai_client = openai_client or create_openai_client()
        self.model = model or settings.OPENAI_MODEL
        self.max_retries = settings.NORMALIZATION_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.NORMALIZATION_RETRY_DELAY if retry_delay is None else retry_delay
        self.timeout = timeout or settings.NORMALIZATION_TIMEOUT
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    async def normalize(self, text: str) -> InvoiceRecord:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            retry=retry_if_exception_type(Exception),
            before_sleep=self._log_retry,
            sleep=self._sleep,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._attempt(text)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise NormalizationError(
                f"Normalization failed after {self.max_attempts} attempts: {last_error}",
                last_error=last_error,
                attempts=self.max_attempts
            ) from last_error

    def _log_retry(self, retry_state: RetryCallState):
        NORMALIZATION_RETRIES.inc()
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"Normalization attempt {retry_state.attempt_number}/{self.max_attempts} failed: "
            f"{error}. Retrying in {delay}s"
        )

    @track_time(STAGE_PROCESSING_TIME, "normalization")
    async def _attempt(self, text: str) -> InvoiceRecord:
        try:
            completion = await asyncio.wait_for(
                self.openai_client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": EXTRACTION_PROMPT},
                        {"role": "user", "content": text or "No text extracted from document"}
                    ],
                    response_format={"type": "json_object"},
                    temperature=0
                ),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise NormalizationError(f"Completion request timed out after {self.timeout}s")

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise NormalizationError("No content received from the completion service")
        return self.parse_response(content)

    @staticmethod
    def parse_response(content: str) -> InvoiceRecord:
        raw = content.strip()

        # Remove markdown wrappers
        if raw.startswith("```"):
            raw = raw.replace("```json", "").replace("```", "").strip()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise NormalizationError(f"Completion service returned invalid JSON: {str(e)}") from e

        if not isinstance(data, dict):
            raise NormalizationError("Completion service returned JSON that is not an object")

        try:
            return InvoiceRecord.model_validate(data)
        except ValidationError as e:
            raise NormalizationError(
                f"Response does not match the invoice schema ({e.error_count()} errors)"
            ) from e

    async def close(self):
        await self.openai_client.close()
