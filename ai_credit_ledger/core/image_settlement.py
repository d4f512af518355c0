"""
Two-phase image settlement.

Image generations are reserved at a conservative estimate, generated, then
settled at the cost the provider reports. Any failure or cancellation between
reserve and settle releases the reservation before the original exception
propagates.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import structlog

from ai_credit_ledger.config.loader import LedgerConfig

from .errors import InsufficientCredits, ModelUnavailable
from .ledger import LedgerEngine, SettleResult
from .pricing import (
    PricingOracle,
    chat_cost_usd,
    chat_credits,
    conservative_image_estimate,
    credits_from_actual_usage,
    nominal_image_estimate,
    resolution_multiplier,
    supports_resolution,
)
from .token_counter import TokenUsage

logger = structlog.get_logger()

SCENE_PLANNER_REFUND_REASON = "scene_planner_refund"


@dataclass(frozen=True)
class GeneratedImage:
    """Image returned by a provider, with the cost it reported (if any)."""
    url: str
    cost_usd: Optional[float] = None


@dataclass(frozen=True)
class ScenePlan:
    """Structured description of the scene to draw."""
    primary_subject: str
    action: str
    setting: str

    def apply_to(self, prompt: str) -> str:
        return (
            f"{prompt}\n\n"
            f"Primary subject: {self.primary_subject}\n"
            f"Action: {self.action}\n"
            f"Setting: {self.setting}"
        )


class ImageProvider(Protocol):
    async def generate_image(
        self,
        model_id: str,
        prompt: str,
        aspect_ratio: str,
        resolution: Optional[str] = None,
    ) -> GeneratedImage:
        ...


class ScenePlanner(Protocol):
    """Turns a free-form prompt into a :class:`ScenePlan`.

    Raises on provider failures and on malformed or incomplete plans.
    """

    async def plan_scene(self, model_id: str, prompt: str) -> ScenePlan:
        ...


@dataclass(frozen=True)
class ImageGenerationResult:
    image_url: str
    credits_charged: int
    reserved_credits: int
    cost_usd: Optional[float]
    used_fallback_estimate: bool
    resolution: str
    resolution_multiplier: Decimal
    resolution_supported: bool
    scene_planner_used: bool
    scene_planner_credits: int
    settlement: SettleResult

    @property
    def new_balance(self) -> int:
        return self.settlement.new_balance


@dataclass(frozen=True)
class _PlannerOutcome:
    prompt: str
    used: bool = False
    credits: int = 0


class ImageSettlementOrchestrator:
    """Reserve, generate and settle one image generation.

    Args:
        ledger: Ledger engine
        oracle: Pricing oracle for image and scene-planner models
        provider: Image generation provider
        scene_planner: Optional planning step run before generation
        config: Ledger configuration (the ledger's when None)
    """

    def __init__(
        self,
        ledger: LedgerEngine,
        oracle: PricingOracle,
        provider: ImageProvider,
        scene_planner: Optional[ScenePlanner] = None,
        config: Optional[LedgerConfig] = None,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.provider = provider
        self.scene_planner = scene_planner
        self.config = config or ledger.config

    async def generate(
        self,
        account_id: str,
        generation_id: str,
        model_id: str,
        prompt: str,
        resolution: str = "1K",
        aspect_ratio: str = "16:9",
    ) -> ImageGenerationResult:
        """Generate one image and charge the account for it.

        Raises:
            ValueError: If the prompt, resolution or aspect ratio is invalid
            ModelUnavailable: If the model has no image price
            DailyLimitExceeded: If the estimate exceeds today's remaining budget
            InsufficientCredits: If the balance cannot cover the reservation
            Exception: Provider failures, re-raised after the reservation
                has been released
        """
        image_config = self.config.image
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if aspect_ratio not in image_config.aspect_ratios:
            raise ValueError(
                f"Invalid aspect ratio '{aspect_ratio}', must be one of: "
                f"{list(image_config.aspect_ratios)}"
            )
        multiplier = resolution_multiplier(resolution, model_id, image_config)
        resolution_supported = supports_resolution(model_id, image_config)

        price = await asyncio.to_thread(self.oracle.price, model_id)
        if price is None or not price.is_image_priced:
            raise ModelUnavailable(model_id)

        reservation_estimate = conservative_image_estimate(
            price, resolution, model_id, self.config.credits, image_config
        )
        nominal = nominal_image_estimate(
            price, resolution, model_id, self.config.credits, image_config
        )
        reservation = await asyncio.to_thread(
            self.ledger.reserve,
            account_id,
            generation_id,
            reservation_estimate.credits,
            model_id,
            nominal.cost_usd,
            "image",
        )

        try:
            planner = await self._plan_scene(
                account_id, generation_id, prompt, charge=not reservation.bypassed
            )
            image = await self.provider.generate_image(
                model_id,
                planner.prompt,
                aspect_ratio,
                resolution if resolution_supported else None,
            )
            credits, used_actual = credits_from_actual_usage(
                image.cost_usd, nominal.credits, self.config.credits
            )
            if not used_actual:
                logger.warning(
                    "image_cost_fallback",
                    account_id=account_id,
                    generation_id=generation_id,
                    model_id=model_id,
                    reported_cost=image.cost_usd,
                    fallback_credits=credits,
                )
            cost_usd = image.cost_usd if used_actual else nominal.cost_usd
            settlement = await asyncio.to_thread(
                self.ledger.settle,
                account_id,
                generation_id,
                reservation_estimate.credits,
                credits,
                model_id,
                cost_usd,
            )
        except BaseException as exc:
            await self._release(account_id, generation_id, exc)
            raise

        logger.info(
            "image_generation_settled",
            account_id=account_id,
            generation_id=generation_id,
            model_id=model_id,
            reserved=reservation_estimate.credits,
            charged=settlement.charged,
            used_fallback_estimate=not used_actual,
        )
        return ImageGenerationResult(
            image_url=image.url,
            credits_charged=settlement.charged,
            reserved_credits=reservation_estimate.credits,
            cost_usd=cost_usd,
            used_fallback_estimate=not used_actual,
            resolution=resolution,
            resolution_multiplier=multiplier,
            resolution_supported=resolution_supported,
            scene_planner_used=planner.used,
            scene_planner_credits=planner.credits,
            settlement=settlement,
        )

    async def _release(self, account_id: str, generation_id: str, cause: BaseException) -> None:
        logger.warning(
            "image_generation_failed",
            account_id=account_id,
            generation_id=generation_id,
            error=repr(cause),
        )
        try:
            await asyncio.shield(asyncio.to_thread(self.ledger.release, account_id, generation_id))
        except Exception:
            # The caller gets the original failure; the reservation stays
            # outstanding and can be released by an operator.
            logger.exception(
                "reservation_release_failed",
                account_id=account_id,
                generation_id=generation_id,
            )

    async def _plan_scene(
        self,
        account_id: str,
        generation_id: str,
        prompt: str,
        charge: bool,
    ) -> _PlannerOutcome:
        """Run the scene planner, charging for it separately.

        The planner is billed under its own generation id by direct debit so
        that its refund can never overlap the main reservation's release.
        Any planner failure falls back to the plain prompt.
        """
        planner_config = self.config.scene_planner
        if not planner_config.enabled or self.scene_planner is None:
            return _PlannerOutcome(prompt=prompt)

        price = await asyncio.to_thread(self.oracle.price, planner_config.model)
        if price is None or not price.is_chat_priced:
            logger.warning("scene_planner_unpriced", model_id=planner_config.model)
            return _PlannerOutcome(prompt=prompt)

        credits = 0
        if charge and not price.is_free:
            usage = TokenUsage(
                input_tokens=planner_config.estimated_tokens,
                output_tokens=planner_config.estimated_tokens,
            )
            amount = chat_credits(usage, price, self.config.credits, self.config.chat)
            try:
                await asyncio.to_thread(
                    self.ledger.settle,
                    account_id,
                    f"{generation_id}:scene-plan",
                    0,
                    amount,
                    planner_config.model,
                    float(chat_cost_usd(usage, price)),
                )
            except InsufficientCredits:
                logger.info(
                    "scene_planner_skipped",
                    account_id=account_id,
                    generation_id=generation_id,
                    required=amount,
                )
                return _PlannerOutcome(prompt=prompt)
            credits = amount

        try:
            plan = await asyncio.wait_for(
                self.scene_planner.plan_scene(planner_config.model, prompt),
                timeout=planner_config.timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "scene_planner_failed",
                account_id=account_id,
                generation_id=generation_id,
                error=repr(exc),
            )
            await self._refund_planner(account_id, credits)
            return _PlannerOutcome(prompt=prompt)
        except BaseException:
            await self._refund_planner(account_id, credits)
            raise

        return _PlannerOutcome(prompt=plan.apply_to(prompt), used=True, credits=credits)

    async def _refund_planner(self, account_id: str, credits: int) -> None:
        if credits == 0:
            return
        await asyncio.shield(asyncio.to_thread(
            self.ledger.grant, account_id, credits, SCENE_PLANNER_REFUND_REASON
        ))
