"""OpenAI chat completions for product matching, with a Redis response cache."""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import redis.asyncio as redis
from openai import AsyncOpenAI

from pricesync.config import settings

logger = logging.getLogger(__name__)

# USD per 1K tokens (input, output), matched by model-name prefix
MODEL_PRICING = {
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.0025, 0.01),
    "gpt-4": (0.01, 0.03),
}
DEFAULT_PRICING = (0.0015, 0.002)


class LLMUnavailableError(RuntimeError):
    """Raised when the LLM cannot be called (no credential, cost cap reached)."""
    pass


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    input_rate, output_rate = next(
        (rates for prefix, rates in MODEL_PRICING.items() if model.lower().startswith(prefix)),
        DEFAULT_PRICING,
    )
    return (prompt_tokens * input_rate + completion_tokens * output_rate) / 1000


@dataclass
class UsageTracker:
    """Daily spend and call count; the spend is checked against the cap before each call."""

    daily_cost: float = 0.0
    call_count: int = 0

    def ensure_budget(self):
        if not settings.track_llm_costs:
            return
        if self.daily_cost >= settings.llm_cost_limit_per_day:
            raise LLMUnavailableError(
                f"Daily LLM cost limit reached: ${self.daily_cost:.2f} >= "
                f"${settings.llm_cost_limit_per_day:.2f}"
            )

    def add(self, cost: float):
        self.daily_cost += cost
        self.call_count += 1

    def reset(self):
        self.daily_cost = 0.0
        self.call_count = 0


class ResponseCache:
    """
    Redis cache of completions keyed by prompt, system prompt and model.

    Cache failures are logged and treated as misses; they never fail a call.
    """

    PREFIX = "llm_cache:"

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    @staticmethod
    def key(prompt: str, system_prompt: str, model: str, images: Sequence[str] = ()) -> str:
        raw = f"{system_prompt}:{prompt}:{model}"
        if images:
            raw += ":" + "|".join(images)
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
        return f"{ResponseCache.PREFIX}{digest}"

    def _client(self) -> Optional[redis.Redis]:
        if not settings.llm_cache_enabled:
            return None
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        client = self._client()
        if client is None:
            return None
        try:
            return await client.get(key)
        except redis.RedisError as e:
            logger.warning(f"LLM cache read failed: {e}")
            return None

    async def set(self, key: str, value: str):
        client = self._client()
        if client is None:
            return
        try:
            await client.setex(key, settings.llm_cache_ttl_seconds, value)
        except redis.RedisError as e:
            logger.warning(f"LLM cache write failed: {e}")

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class LLMService:
    """
    Thin wrapper over the OpenAI async client.

    Adds the response cache and the daily cost cap. Retries are the caller's
    concern; this service makes exactly one API request per uncached call.
    """

    def __init__(self, cache: Optional[ResponseCache] = None):
        self._client: Optional[AsyncOpenAI] = None
        self.cache = cache or ResponseCache()
        self.usage = UsageTracker()

    @property
    def is_configured(self) -> bool:
        return bool(settings.openai_api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.is_configured:
                raise LLMUnavailableError("OpenAI API key not configured")
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    async def call_llm(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        use_cache: bool = True,
        json_mode: bool = False,
        images: Sequence[str] = (),
    ) -> str:
        """
        Send one chat completion and return the response text.

        Args:
            prompt: User prompt
            system_prompt: System instructions
            temperature: Sampling temperature (defaults to settings.llm_temperature)
            model: Model name (defaults to settings.llm_model)
            use_cache: Read and write the Redis cache
            json_mode: Ask the API for a JSON object response
            images: Image URLs sent after the prompt text (vision models)

        Returns:
            Response text

        Raises:
            LLMUnavailableError: If no API key is set or the daily cap is reached
        """
        model = model or settings.llm_model
        self.usage.ensure_budget()

        cache_key = ResponseCache.key(prompt, system_prompt, model, images)
        if use_cache:
            cached = await self.cache.get(cache_key)
            if cached:
                logger.debug(f"LLM cache hit for prompt: {prompt[:50]}...")
                return cached

        content: Any = prompt
        if images:
            content = [{"type": "text", "text": prompt}] + [
                {"type": "image_url", "image_url": {"url": url}} for url in images
            ]
        messages = [{"role": "user", "content": content}]
        if system_prompt:
            messages.insert(0, {"role": "system", "content": system_prompt})

        request: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature if temperature is not None else settings.llm_temperature,
            "max_tokens": settings.llm_max_tokens,
            "timeout": settings.llm_timeout_seconds,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        try:
            response = await self._get_client().chat.completions.create(**request)
        except LLMUnavailableError:
            raise
        except Exception as e:
            logger.error(f"LLM API call failed ({model}): {e}")
            raise

        text = response.choices[0].message.content or ""

        cost = 0.0
        if settings.track_llm_costs and response.usage is not None:
            cost = estimate_cost(model, response.usage.prompt_tokens, response.usage.completion_tokens)
        self.usage.add(cost)
        logger.debug(f"LLM call cost: ${cost:.4f} (today: ${self.usage.daily_cost:.2f})")

        if use_cache and text:
            await self.cache.set(cache_key, text)
        return text

    async def call_llm_structured(
        self,
        prompt: str,
        response_schema: Dict[str, Any],
        system_prompt: str = "",
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        images: Sequence[str] = (),
    ) -> Any:
        """
        Call the LLM in JSON mode and parse the reply.

        Raises:
            LLMUnavailableError: As for ``call_llm``
            ValueError: If the reply is not valid JSON
        """
        schema_note = (
            f"Respond with valid JSON matching this schema: {json.dumps(response_schema, indent=2)}\n"
            "Return only the JSON object, no additional text."
        )
        full_system = f"{system_prompt}\n\n{schema_note}" if system_prompt else schema_note

        text = await self.call_llm(
            prompt=prompt,
            system_prompt=full_system,
            temperature=temperature,
            model=model,
            json_mode=True,
            images=images,
        )
        return parse_json_response(text)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "call_count": self.usage.call_count,
            "daily_cost": self.usage.daily_cost,
            "cost_limit": settings.llm_cost_limit_per_day,
            "cache_enabled": settings.llm_cache_enabled,
        }

    def reset_daily_stats(self):
        """Reset daily cost and call count (scheduled at midnight UTC)."""
        self.usage.reset()
        logger.info("LLM daily stats reset")

    async def close(self):
        await self.cache.close()
        if self._client:
            await self._client.close()
            self._client = None


def parse_json_response(response_text: str) -> Any:
    """
    Parse a JSON payload, tolerating a markdown code fence around it.

    Raises:
        ValueError: If the text is not valid JSON
    """
    text = (response_text or "").strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM JSON response: {e}\nResponse: {text[:200]}")
        raise ValueError(f"Invalid JSON response from LLM: {e}") from e


# Global LLM service instance
llm_service = LLMService()
