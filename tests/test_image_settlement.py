"""
Tests for two-phase (image) settlement and the scene-planner pre-step.
"""

import asyncio
import os
import tempfile
from decimal import Decimal

import pytest

from ai_credit_ledger.config.loader import LedgerConfig, ScenePlannerConfig
from ai_credit_ledger.core.errors import (
    DailyLimitExceeded,
    InsufficientCredits,
    ModelUnavailable,
    ProviderError,
)
from ai_credit_ledger.core.image_settlement import (
    SCENE_PLANNER_REFUND_REASON,
    GeneratedImage,
    ImageSettlementOrchestrator,
    ScenePlan,
)
from ai_credit_ledger.core.ledger import GenerationStatus, LedgerEngine
from ai_credit_ledger.core.pricing import ModelPrice, PricingTable
from ai_credit_ledger.storage.models import AccountTier, EntryKind
from ai_credit_ledger.storage.repository import LedgerRepository

IMAGE_MODEL = "google/gemini-2.5-flash-image"
OTHER_IMAGE_MODEL = "openai/gpt-image-1"
PLANNER_MODEL = "anthropic/claude-3-haiku"
FREE_PLANNER_MODEL = "meta-llama/llama-3-8b:free"

ORACLE = PricingTable({
    IMAGE_MODEL: ModelPrice(per_image=Decimal("0.039")),
    OTHER_IMAGE_MODEL: ModelPrice(per_image=Decimal("0.039")),
    PLANNER_MODEL: ModelPrice(prompt_per_million=Decimal("0.25"), completion_per_million=Decimal("1.25")),
    FREE_PLANNER_MODEL: ModelPrice(prompt_per_million=Decimal("0"), completion_per_million=Decimal("0")),
})

# $0.039 * 35 * 1.25 -> 171 credits reserved at 1K; nominal is 5 credits
RESERVED_1K = 171
NOMINAL_1K = 5
# Reported $0.02 * 1.25 -> 3 credits
REPORTED_COST = 0.02
CHARGED = 3
PLANNER_CREDITS = 1

PLAN = ScenePlan(
    primary_subject="A figure in the void",
    action="witnessing creation",
    setting="primordial darkness",
)


class FakeImageProvider:
    def __init__(self, image=None, error=None, hang=False):
        self.image = image or GeneratedImage(url="data:image/png;base64,test", cost_usd=REPORTED_COST)
        self.error = error
        self.hang = hang
        self.calls = []

    async def generate_image(self, model_id, prompt, aspect_ratio, resolution=None):
        self.calls.append({
            "model_id": model_id,
            "prompt": prompt,
            "aspect_ratio": aspect_ratio,
            "resolution": resolution,
        })
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.image


class FakeScenePlanner:
    def __init__(self, plan=PLAN, error=None, hang=False):
        self.plan = plan
        self.error = error
        self.hang = hang
        self.calls = 0

    async def plan_scene(self, model_id, prompt):
        self.calls += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.plan


def _engine(temp_dir, balance=500, planner_model=None, planner_timeout=10.0):
    config = LedgerConfig()
    if planner_model is not None:
        config = LedgerConfig(scene_planner=ScenePlannerConfig(
            enabled=True, model=planner_model, timeout_seconds=planner_timeout
        ))
    repository = LedgerRepository(os.path.join(temp_dir, "test.db"))
    repository.initialize_schema()
    engine = LedgerEngine(repository, config)
    engine.ensure_account("acct")
    if balance:
        engine.grant("acct", balance, "test_funding")
    return engine


def _balance(engine):
    return engine.get_account("acct").balance


def _status(engine, generation_id="g1"):
    return engine.generation_state("acct", generation_id).status


def _planner_refunds(engine):
    return [e for e in engine.credit_history("acct")
            if e.kind == EntryKind.GRANT and e.reason == SCENE_PLANNER_REFUND_REASON]


class TestImageSettlement:
    """Test reserve, generate and settle."""

    @pytest.mark.asyncio
    async def test_settles_at_reported_cost(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, FakeImageProvider())

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse")

            assert result.image_url == "data:image/png;base64,test"
            assert result.reserved_credits == RESERVED_1K
            assert result.credits_charged == CHARGED
            assert result.cost_usd == REPORTED_COST
            assert not result.used_fallback_estimate
            assert result.settlement.refunded == RESERVED_1K - CHARGED
            assert result.new_balance == 500 - CHARGED
            assert _balance(engine) == 500 - CHARGED
            assert _status(engine) == GenerationStatus.SETTLED

    @pytest.mark.asyncio
    async def test_falls_back_to_nominal_estimate(self):
        """Without a reported cost the nominal price is charged, not the reservation."""
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeImageProvider(GeneratedImage(url="https://img/1.png", cost_usd=None))
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider)

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse")

            assert result.used_fallback_estimate
            assert result.credits_charged == NOMINAL_1K
            assert result.cost_usd == pytest.approx(0.039)
            assert _balance(engine) == 500 - NOMINAL_1K

    @pytest.mark.asyncio
    async def test_resolution_applies_to_supported_models_only(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, balance=1000)
            provider = FakeImageProvider()
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider)

            gemini = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse", resolution="2K")
            other = await orchestrator.generate("acct", "g2", OTHER_IMAGE_MODEL, "A lighthouse", resolution="2K")

            assert gemini.resolution_supported
            assert gemini.resolution_multiplier == Decimal("3.5")
            assert gemini.reserved_credits == 599  # 171 * 3.5 = 598.5
            assert provider.calls[0]["resolution"] == "2K"

            assert not other.resolution_supported
            assert other.resolution_multiplier == Decimal("1")
            assert other.reserved_credits == RESERVED_1K
            assert provider.calls[1]["resolution"] is None

    @pytest.mark.asyncio
    async def test_invalid_request_rejected_before_reserving(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeImageProvider()
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider)

            with pytest.raises(ValueError, match="Invalid resolution"):
                await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse", resolution="8K")
            with pytest.raises(ValueError, match="Invalid aspect ratio"):
                await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse", aspect_ratio="1:7")

            assert provider.calls == []
            assert _status(engine) == GenerationStatus.NONE

    @pytest.mark.asyncio
    async def test_unpriced_model_rejected_before_reserving(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeImageProvider()
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider)

            with pytest.raises(ModelUnavailable):
                await orchestrator.generate("acct", "g1", "unknown/image-model", "A lighthouse")
            with pytest.raises(ModelUnavailable):
                # Chat-only price cannot be used for images
                await orchestrator.generate("acct", "g1", PLANNER_MODEL, "A lighthouse")

            assert provider.calls == []
            assert _balance(engine) == 500

    @pytest.mark.asyncio
    async def test_conservative_reservation_can_reject(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, balance=RESERVED_1K - 1)
            provider = FakeImageProvider()
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider)

            with pytest.raises(InsufficientCredits) as exc_info:
                await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse")

            assert exc_info.value.required == RESERVED_1K
            assert provider.calls == []

    @pytest.mark.asyncio
    async def test_daily_limit_uses_nominal_cost(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            engine.set_daily_limit("acct", 0.03)
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, FakeImageProvider())

            with pytest.raises(DailyLimitExceeded):
                await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse")

            engine.set_daily_limit("acct", 0.04)
            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse")
            assert result.credits_charged == CHARGED

    @pytest.mark.asyncio
    async def test_unlimited_account_is_not_charged(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, balance=0)
            engine.set_tier("acct", AccountTier.UNLIMITED)
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, FakeImageProvider())

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse")

            assert result.settlement.bypassed
            assert result.credits_charged == 0
            assert _balance(engine) == 0
            assert _status(engine) == GenerationStatus.BYPASSED


class TestImageFailure:
    """Test release on provider failure and cancellation."""

    @pytest.mark.asyncio
    async def test_provider_error_releases_and_propagates_unchanged(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            error = ProviderError("No image generated")
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, FakeImageProvider(error=error))

            with pytest.raises(ProviderError) as exc_info:
                await orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse")

            assert exc_info.value is error
            assert _balance(engine) == 500
            assert _status(engine) == GenerationStatus.RELEASED

    @pytest.mark.asyncio
    async def test_cancellation_releases(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeImageProvider(hang=True)
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider)

            task = asyncio.ensure_future(orchestrator.generate("acct", "g1", IMAGE_MODEL, "A lighthouse"))
            while not provider.calls:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            assert _balance(engine) == 500
            assert _status(engine) == GenerationStatus.RELEASED


class TestScenePlanner:
    """Test the separately billed planning pre-step."""

    @pytest.mark.asyncio
    async def test_plan_is_charged_and_used(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, planner_model=PLANNER_MODEL)
            provider = FakeImageProvider()
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider, FakeScenePlanner())

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "In the beginning")

            assert result.scene_planner_used
            assert result.scene_planner_credits == PLANNER_CREDITS
            assert "Primary subject: A figure in the void" in provider.calls[0]["prompt"]
            assert _balance(engine) == 500 - CHARGED - PLANNER_CREDITS
            assert _status(engine, "g1:scene-plan") == GenerationStatus.SETTLED
            assert _planner_refunds(engine) == []

    @pytest.mark.asyncio
    async def test_failure_refunds_and_uses_plain_prompt(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, planner_model=PLANNER_MODEL)
            provider = FakeImageProvider()
            planner = FakeScenePlanner(error=ProviderError("Scene planner error", upstream_status=500))
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider, planner)

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "In the beginning")

            assert not result.scene_planner_used
            assert provider.calls[0]["prompt"] == "In the beginning"
            refunds = _planner_refunds(engine)
            assert len(refunds) == 1
            assert refunds[0].delta == PLANNER_CREDITS
            assert _balance(engine) == 500 - CHARGED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, planner_model=PLANNER_MODEL, planner_timeout=0.05)
            orchestrator = ImageSettlementOrchestrator(
                engine, ORACLE, FakeImageProvider(), FakeScenePlanner(hang=True)
            )

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "In the beginning")

            assert not result.scene_planner_used
            assert len(_planner_refunds(engine)) == 1
            assert _balance(engine) == 500 - CHARGED

    @pytest.mark.asyncio
    async def test_free_planner_needs_no_refund(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, planner_model=FREE_PLANNER_MODEL)
            planner = FakeScenePlanner(error=ValueError("malformed plan"))
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, FakeImageProvider(), planner)

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "In the beginning")

            assert result.scene_planner_credits == 0
            assert _planner_refunds(engine) == []
            assert _status(engine, "g1:scene-plan") == GenerationStatus.NONE
            assert _balance(engine) == 500 - CHARGED

    @pytest.mark.asyncio
    async def test_skipped_when_funds_are_short(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, balance=RESERVED_1K, planner_model=PLANNER_MODEL)
            planner = FakeScenePlanner()
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, FakeImageProvider(), planner)

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "In the beginning")

            assert planner.calls == 0
            assert not result.scene_planner_used
            assert _balance(engine) == RESERVED_1K - CHARGED

    @pytest.mark.asyncio
    async def test_disabled_planner_is_not_called(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            planner = FakeScenePlanner()
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, FakeImageProvider(), planner)

            result = await orchestrator.generate("acct", "g1", IMAGE_MODEL, "In the beginning")

            assert planner.calls == 0
            assert result.scene_planner_credits == 0

    @pytest.mark.asyncio
    async def test_image_failure_keeps_planner_charge(self):
        """The planner refund and the main release never overlap."""
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, planner_model=PLANNER_MODEL)
            provider = FakeImageProvider(error=ProviderError("No image generated"))
            orchestrator = ImageSettlementOrchestrator(engine, ORACLE, provider, FakeScenePlanner())

            with pytest.raises(ProviderError):
                await orchestrator.generate("acct", "g1", IMAGE_MODEL, "In the beginning")

            assert _status(engine) == GenerationStatus.RELEASED
            assert _planner_refunds(engine) == []
            assert _balance(engine) == 500 - PLANNER_CREDITS
