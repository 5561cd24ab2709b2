"""Text-generation collaborator backed by the OpenAI chat completions API."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Protocol, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from .config import Settings, get_settings
from .errors import CollaboratorError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
JITTER_FRACTION = 0.25

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

ModelT = TypeVar("ModelT", bound=BaseModel)
SleepFn = Callable[[float], Awaitable[Any]]


class GenerationOptions(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    max_tokens: Optional[int] = Field(default=None, ge=1)


class GenerationUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class GenerationResult(BaseModel):
    content: str
    model: str
    usage: GenerationUsage = Field(default_factory=GenerationUsage)


@dataclass(frozen=True)
class StructuredResult(Generic[ModelT]):
    data: ModelT
    usage: GenerationUsage


class TextGenerator(Protocol):
    async def generate(
        self,
        system_prompt: str,
        user_message: str,
        options: Optional[GenerationOptions] = None,
    ) -> GenerationResult:
        ...


def classify_error(exc: BaseException) -> CollaboratorError:
    """Map an SDK failure onto the collaborator error taxonomy."""
    status = getattr(exc, "status_code", None)
    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, openai.APITimeoutError):
        return CollaboratorError(message, "timeout", cause=exc, retryable=True)
    if isinstance(exc, openai.APIConnectionError):
        return CollaboratorError(message, "network_error", cause=exc, retryable=True)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return CollaboratorError(message, "api_key_invalid", cause=exc, status_code=status)
    if status == 429:
        return CollaboratorError(message, "rate_limited", cause=exc, retryable=True, status_code=status)
    if status is not None and status >= 500:
        return CollaboratorError(
            message,
            "server_error",
            cause=exc,
            retryable=status in RETRYABLE_STATUS_CODES,
            status_code=status,
        )
    if status is not None and 400 <= status < 500:
        return CollaboratorError(message, "invalid_request", cause=exc, status_code=status)
    return CollaboratorError(message, "unknown_error", cause=exc, status_code=status)


def backoff_delay_ms(
    attempt: int,
    *,
    initial_delay_ms: int,
    max_delay_ms: int,
    rng: Optional[random.Random] = None,
) -> float:
    """Exponential backoff with up to 25% jitter, capped at ``max_delay_ms``."""
    source = rng or random
    exponential = initial_delay_ms * (2 ** max(0, attempt))
    jitter = exponential * JITTER_FRACTION * source.random()
    return float(min(max_delay_ms, exponential + jitter))


def extract_json(content: str) -> str:
    """Return the JSON payload of a response, unwrapping markdown fences."""
    match = _FENCED_JSON.search(content or "")
    text = match.group(1) if match else (content or "")
    text = text.strip()
    if text and text[0] not in "{[":
        start = text.find("{")
        end = text.rfind("}")
        if start != -1 and end > start:
            text = text[start : end + 1]
    return text


class OpenAITextGenerator:
    """TextGenerator over ``AsyncOpenAI`` with bounded exponential backoff.

    SDK-level retries are disabled so the retry policy lives in one place.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        client: Optional[AsyncOpenAI] = None,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._settings.openai_api_key:
                raise CollaboratorError("OPENAI_API_KEY is not configured.", "api_key_invalid")
            self._client = AsyncOpenAI(api_key=self._settings.openai_api_key, max_retries=0)
        return self._client

    async def generate(
        self,
        system_prompt: str,
        user_message: str,
        options: Optional[GenerationOptions] = None,
    ) -> GenerationResult:
        resolved = options or GenerationOptions()
        max_retries = self._settings.max_retries
        attempt = 0

        while True:
            try:
                return await self._complete(system_prompt, user_message, resolved)
            except CollaboratorError as exc:
                if not exc.retryable:
                    raise
                if attempt >= max_retries:
                    raise CollaboratorError(
                        f"Max retries ({max_retries}) exceeded. Last error: {exc}",
                        "max_retries_exceeded",
                        cause=exc,
                        status_code=exc.status_code,
                    ) from exc
                delay_ms = backoff_delay_ms(
                    attempt,
                    initial_delay_ms=self._settings.initial_delay_ms,
                    max_delay_ms=self._settings.max_delay_ms,
                    rng=self._rng,
                )
                logger.warning(
                    "Text generation attempt %s/%s failed (%s); retrying in %.0f ms",
                    attempt + 1,
                    max_retries + 1,
                    exc.code,
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000.0)
                attempt += 1

    async def _complete(
        self,
        system_prompt: str,
        user_message: str,
        options: GenerationOptions,
    ) -> GenerationResult:
        client = self._get_client()
        model = options.model or self._settings.model
        temperature = options.temperature if options.temperature is not None else self._settings.temperature
        timeout_ms = options.timeout_ms or self._settings.timeout_ms
        request: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "temperature": temperature,
            "timeout": timeout_ms / 1000.0,
        }
        if options.max_tokens is not None:
            request["max_tokens"] = options.max_tokens

        try:
            response = await client.chat.completions.create(**request)
        except openai.OpenAIError as exc:
            raise classify_error(exc) from exc

        if not response.choices or not response.choices[0].message.content:
            raise CollaboratorError("No text content in response", "generation_failed")

        usage = response.usage
        return GenerationResult(
            content=response.choices[0].message.content,
            model=response.model or model,
            usage=GenerationUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )


async def generate_structured(
    generator: TextGenerator,
    system_prompt: str,
    user_message: str,
    response_model: Type[ModelT],
    options: Optional[GenerationOptions] = None,
) -> StructuredResult[ModelT]:
    schema = response_model.model_json_schema()
    instructions = (
        f"{system_prompt}\n\n"
        "Respond strictly with JSON. Schema:\n"
        f"{json.dumps(schema, ensure_ascii=False, indent=2)}"
    )
    result = await generator.generate(instructions, user_message, options)
    payload = extract_json(result.content)
    try:
        data = response_model.model_validate_json(payload)
    except ValidationError as exc:
        raise CollaboratorError(
            f"Failed to parse structured response: {exc}",
            "json_parse_error",
            cause=exc,
        ) from exc
    return StructuredResult(data=data, usage=result.usage)


__all__ = [
    "GenerationOptions",
    "GenerationResult",
    "GenerationUsage",
    "OpenAITextGenerator",
    "StructuredResult",
    "TextGenerator",
    "backoff_delay_ms",
    "classify_error",
    "extract_json",
    "generate_structured",
]
