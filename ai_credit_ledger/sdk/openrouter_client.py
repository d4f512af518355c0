"""
OpenRouter adapters over the OpenAI SDK.

Implements the provider interfaces the settlement orchestrators depend on:
streaming chat, image generation, scene planning and model pricing. All
requests go through OpenRouter's OpenAI-compatible API.
"""

import json
import os
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog
from openai import APIError, AsyncOpenAI, OpenAI

from ..core.errors import ProviderError
from ..core.image_settlement import GeneratedImage, ScenePlan
from ..core.pricing import ModelPrice
from ..core.stream_settlement import ChatChunk
from ..core.token_counter import TokenUsage

logger = structlog.get_logger()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
API_KEY_ENV = "OPENROUTER_API_KEY"

SCENE_PLANNER_PROMPT = (
    "You plan illustrations. Reply with a JSON object with the string fields "
    "primarySubject, action and setting describing the single scene to draw."
)

_SCENE_FIELDS = ("primarySubject", "action", "setting")


def async_client(api_key: Optional[str] = None) -> AsyncOpenAI:
    """AsyncOpenAI client pointed at OpenRouter."""
    return AsyncOpenAI(base_url=OPENROUTER_BASE_URL, api_key=api_key or os.environ.get(API_KEY_ENV))


def sync_client(api_key: Optional[str] = None) -> OpenAI:
    """OpenAI client pointed at OpenRouter."""
    return OpenAI(base_url=OPENROUTER_BASE_URL, api_key=api_key or os.environ.get(API_KEY_ENV))


def _field(obj: Any, name: str) -> Any:
    """Read a field from an SDK object or a raw dict (OpenRouter extensions)."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _provider_error(action: str, exc: APIError) -> ProviderError:
    status = getattr(exc, "status_code", None)
    return ProviderError(f"{action} failed: {exc.message}", upstream_status=status)


class OpenRouterChatProvider:
    """Streaming chat completions with final token usage."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.client = client or async_client()

    async def open_chat_stream(
        self,
        model_id: str,
        messages: List[Dict[str, str]]
    ) -> AsyncIterator[ChatChunk]:
        """Open the upstream stream; failures to open raise immediately.

        Raises:
            ValueError: If model_id or messages is empty
            ProviderError: If the provider rejects the request
        """
        if not model_id or not model_id.strip():
            raise ValueError("model_id is required and cannot be empty")
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        try:
            stream = await self.client.chat.completions.create(
                model=model_id,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
            )
        except APIError as exc:
            raise _provider_error("Chat completion", exc) from exc
        return self._chunks(stream)

    @staticmethod
    async def _chunks(stream: Any) -> AsyncIterator[ChatChunk]:
        try:
            async for chunk in stream:
                text = ""
                if chunk.choices:
                    text = chunk.choices[0].delta.content or ""
                usage = TokenUsage.from_provider(_field(chunk, "usage"))
                if text or usage is not None:
                    yield ChatChunk(text=text, usage=usage)
        finally:
            await stream.close()


class OpenRouterImageProvider:
    """Image generation through the chat completions endpoint."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.client = client or async_client()

    async def generate_image(
        self,
        model_id: str,
        prompt: str,
        aspect_ratio: str,
        resolution: Optional[str] = None,
    ) -> GeneratedImage:
        """Generate one image.

        Returns:
            GeneratedImage with the first image URL and ``usage.cost`` if the
            provider reported one

        Raises:
            ProviderError: If the request fails or no image is returned
        """
        image_config = {"aspect_ratio": aspect_ratio}
        if resolution is not None:
            image_config["image_size"] = resolution

        try:
            response = await self.client.chat.completions.create(
                model=model_id,
                messages=[{"role": "user", "content": prompt}],
                extra_body={
                    "modalities": ["image", "text"],
                    "image_config": image_config,
                    "usage": {"include": True},
                },
            )
        except APIError as exc:
            raise _provider_error("Image generation", exc) from exc

        url = self._image_url(response)
        if url is None:
            raise ProviderError("No image generated")
        return GeneratedImage(url=url, cost_usd=self._reported_cost(response))

    @staticmethod
    def _image_url(response: Any) -> Optional[str]:
        choices = _field(response, "choices") or []
        if not choices:
            return None
        images = _field(_field(choices[0], "message"), "images") or []
        if not images:
            return None
        return _field(_field(images[0], "image_url"), "url")

    @staticmethod
    def _reported_cost(response: Any) -> Optional[float]:
        cost = _field(_field(response, "usage"), "cost")
        if isinstance(cost, bool) or not isinstance(cost, (int, float)):
            return None
        return float(cost)


class OpenRouterScenePlanner:
    """Scene planning with a small chat model returning JSON."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        self.client = client or async_client()

    async def plan_scene(self, model_id: str, prompt: str) -> ScenePlan:
        """Ask the model for a scene plan.

        Raises:
            ProviderError: If the request fails
            ValueError: If the reply is not a JSON object with every field
        """
        try:
            response = await self.client.chat.completions.create(
                model=model_id,
                messages=[
                    {"role": "system", "content": SCENE_PLANNER_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
            )
        except APIError as exc:
            raise _provider_error("Scene planning", exc) from exc

        if not response.choices:
            raise ValueError("Scene planner returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise ValueError("Scene planner returned an empty reply")

        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("Scene plan must be a JSON object")
        missing = [name for name in _SCENE_FIELDS
                   if not isinstance(data.get(name), str) or not data[name].strip()]
        if missing:
            raise ValueError(f"Scene plan missing fields: {missing}")

        return ScenePlan(
            primary_subject=data["primarySubject"],
            action=data["action"],
            setting=data["setting"],
        )


class OpenRouterPricingOracle:
    """Pricing oracle backed by OpenRouter's model list.

    Prices are cached and refreshed at most every ``ttl_seconds``. A failed
    refresh keeps serving the previous prices, if any.

    Args:
        client: Synchronous OpenAI client pointed at OpenRouter
        ttl_seconds: Cache lifetime
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.client = client or sync_client()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._prices: Dict[str, ModelPrice] = {}
        self._fetched_at: Optional[float] = None

    def price(self, model_id: str) -> Optional[ModelPrice]:
        with self._lock:
            if self._is_stale():
                self._refresh()
            return self._prices.get(model_id)

    def _is_stale(self) -> bool:
        return self._fetched_at is None or self._clock() - self._fetched_at >= self.ttl_seconds

    def _refresh(self) -> None:
        try:
            models = list(self.client.models.list())
        except APIError as exc:
            if not self._prices:
                raise _provider_error("Model price refresh", exc) from exc
            logger.warning("model_price_refresh_failed", error=exc.message)
            return

        prices = {}
        for model in models:
            price = self._parse_pricing(_field(model, "pricing"))
            if price is not None:
                prices[model.id] = price
        self._prices = prices
        self._fetched_at = self._clock()
        logger.info("model_prices_refreshed", model_count=len(prices))

    @staticmethod
    def _parse_pricing(pricing: Any) -> Optional[ModelPrice]:
        """Convert OpenRouter pricing (USD per token / per image) to ModelPrice."""
        if pricing is None:
            return None
        prompt = _decimal_or_none(_field(pricing, "prompt"))
        completion = _decimal_or_none(_field(pricing, "completion"))
        image = _decimal_or_none(_field(pricing, "image"))
        if prompt is None or completion is None:
            prompt = completion = None
        if prompt is None and image is None:
            return None
        return ModelPrice(
            prompt_per_million=prompt * 1_000_000 if prompt is not None else None,
            completion_per_million=completion * 1_000_000 if completion is not None else None,
            per_image=image if image is not None and image > 0 else None,
        )


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return None
    if not result.is_finite() or result < 0:
        return None
    return result
