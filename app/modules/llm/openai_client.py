"""
OpenAI chat client used by every AI step of the rule engine.

Each call site passes a pydantic schema; the model is asked for a JSON object
and the reply is validated into that schema.

Retries (exponential backoff, LLM_MAX_ATTEMPTS attempts) cover:
- Network errors and timeouts
- Rate limits (429) and server errors (5xx)
- Replies that are not valid JSON or do not fit the schema

CRITICAL SECURITY:
- Prompts contain message content; never log prompts or replies
- Only usage numbers (tokens, cost) are logged
"""

import json
import logging
from typing import Optional, Type, TypeVar

from openai import (
    AsyncOpenAI,
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    OpenAIError,
    RateLimitError,
)
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# USD per 1M tokens (input, output)
MODEL_PRICING = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.00, 8.00),
}
DEFAULT_PRICING = MODEL_PRICING["gpt-4o-mini"]


class LLMError(Exception):
    """Raised when an LLM call fails for good (after retries)."""

    def __init__(self, message: str, label: Optional[str] = None):
        super().__init__(message)
        self.label = label


class LLMResponseInvalid(Exception):
    """Reply was not JSON or did not match the schema (retryable)."""
    pass


RETRYABLE_ERRORS = (
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    InternalServerError,
    LLMResponseInvalid,
)


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    input_price, output_price = MODEL_PRICING.get(model, DEFAULT_PRICING)
    return (prompt_tokens * input_price + completion_tokens * output_price) / 1_000_000


def select_model(email_account=None, economy: bool = False) -> str:
    """
    Model for a call: the economy model for cheap checks, else the user's
    override, else the default.
    """
    if economy:
        return settings.OPENAI_ECONOMY_MODEL
    user = getattr(email_account, "user", None)
    override = getattr(user, "ai_model", None) if user is not None else None
    return override or settings.OPENAI_MODEL


class LLMClient:
    """
    Async OpenAI wrapper returning validated pydantic objects.

    Usage:
        llm = get_llm_client()
        result = await llm.generate_object(
            system="You are an email assistant...",
            prompt=prompt,
            schema=ChooseRuleResponse,
            label="choose-rule",
            email_account=account,
        )
    """

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(
            api_key=api_key or settings.OPENAI_API_KEY,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
            max_retries=0,  # retries handled here
        )
        self.max_attempts = settings.LLM_MAX_ATTEMPTS

    async def _call(self, model: str, system: str, prompt: str, schema: Type[T], label: str) -> T:
        response = await self.client.chat.completions.create(
            model=model,
            messages=[
                {
                    "role": "system",
                    "content": (
                        f"{system}\n\nRespond with ONLY a valid JSON object matching this JSON schema:\n"
                        f"{json.dumps(schema.model_json_schema())}"
                    ),
                },
                {"role": "user", "content": prompt},
            ],
            temperature=0.2,
            response_format={"type": "json_object"},
        )

        usage = response.usage
        if usage is not None:
            cost = estimate_cost(model, usage.prompt_tokens, usage.completion_tokens)
            logger.info(
                f"LLM call {label} used {usage.total_tokens} tokens (${cost:.5f})",
                extra={
                    "label": label,
                    "model": model,
                    "prompt_tokens": usage.prompt_tokens,
                    "completion_tokens": usage.completion_tokens,
                    "cost": cost,
                }
            )

        text = response.choices[0].message.content or ""
        try:
            return schema.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(
                f"LLM call {label} returned an invalid object: {type(e).__name__}",
                extra={"label": label, "model": model}
            )
            raise LLMResponseInvalid(str(e)) from e

    async def generate_object(
        self,
        system: str,
        prompt: str,
        schema: Type[T],
        label: str,
        email_account=None,
        economy: bool = False,
    ) -> T:
        """
        Ask the model for a JSON object and validate it into schema.

        Raises:
            LLMError: Non-retryable API error, or retries exhausted
        """
        model = select_model(email_account, economy=economy)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=4),  # 1s, 2s, 4s
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                reraise=True,
            ):
                with attempt:
                    return await self._call(model, system, prompt, schema, label)
        except RETRYABLE_ERRORS as e:
            logger.error(
                f"LLM call {label} failed after {self.max_attempts} attempts: {type(e).__name__}",
                extra={"label": label, "model": model}
            )
            raise LLMError(f"LLM call {label} failed: {e}", label=label) from e
        except (OpenAIError, RetryError) as e:
            logger.error(
                f"LLM call {label} failed: {type(e).__name__}",
                extra={"label": label, "model": model}
            )
            raise LLMError(f"LLM call {label} failed: {e}", label=label) from e


_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Process-wide client (singleton)."""
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
