"""
Tests for streaming (chat) settlement.

Every way a stream can end must settle or release exactly once.
"""

import asyncio
import os
import sqlite3
import tempfile
from decimal import Decimal
from unittest.mock import patch

import pytest

from ai_credit_ledger.core.errors import InsufficientCredits, ModelUnavailable
from ai_credit_ledger.core.ledger import GenerationStatus, LedgerEngine
from ai_credit_ledger.core.pricing import ModelPrice, PricingTable
from ai_credit_ledger.core.stream_settlement import (
    ChatChunk,
    ChatSettlementOrchestrator,
    SettlementState,
    StreamSettlement,
)
from ai_credit_ledger.core.token_counter import TokenUsage
from ai_credit_ledger.storage.models import AccountTier
from ai_credit_ledger.storage.repository import LedgerRepository

MODEL = "anthropic/claude-3-opus"
MESSAGES = [{"role": "user", "content": "Hello"}]

# 500 in / 1000 out at $15/$75 per M reserves 11 credits;
# 1000 in / 500 out settles at 7.
ORACLE = PricingTable({
    MODEL: ModelPrice(prompt_per_million=Decimal("15"), completion_per_million=Decimal("75")),
})
RESERVED = 11
USAGE = TokenUsage(input_tokens=1000, output_tokens=500)
CHARGED = 7


async def _upstream(chunks, error=None, hang=False):
    for chunk in chunks:
        yield chunk
    if hang:
        await asyncio.Event().wait()
    if error is not None:
        raise error


class FakeChatProvider:
    """Chat provider yielding canned chunks."""

    def __init__(self, chunks=(), error=None, hang=False, open_error=None):
        self.chunks = list(chunks)
        self.error = error
        self.hang = hang
        self.open_error = open_error
        self.calls = 0

    async def open_chat_stream(self, model_id, messages):
        self.calls += 1
        if self.open_error is not None:
            raise self.open_error
        return _upstream(self.chunks, self.error, self.hang)


def _engine(temp_dir, balance=100):
    repository = LedgerRepository(os.path.join(temp_dir, "test.db"))
    repository.initialize_schema()
    engine = LedgerEngine(repository)
    engine.ensure_account("acct")
    if balance:
        engine.grant("acct", balance, "test_funding")
    return engine


def _balance(engine):
    return engine.get_account("acct").balance


def _status(engine, generation_id="g1"):
    return engine.generation_state("acct", generation_id).status


COMPLETE = [ChatChunk(text="Hel"), ChatChunk(text="lo"), ChatChunk(usage=USAGE)]


class TestStreamCompletion:
    """Test normal stream completion."""

    @pytest.mark.asyncio
    async def test_settles_from_reported_usage(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, FakeChatProvider(COMPLETE))

            stream = await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)
            assert _balance(engine) == 100 - RESERVED

            texts = [text async for text in stream]

            # Ledger is consistent as soon as iteration ends
            assert texts == ["Hel", "lo"]
            assert _balance(engine) == 100 - CHARGED
            assert _status(engine) == GenerationStatus.SETTLED
            assert stream.settlement.state == SettlementState.SETTLED
            assert stream.outcome.charged == CHARGED
            assert stream.outcome.refunded == RESERVED - CHARGED

    @pytest.mark.asyncio
    async def test_missing_usage_charges_reservation(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeChatProvider([ChatChunk(text="Hi")])
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, provider)

            stream = await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)
            async for _ in stream:
                pass

            assert _balance(engine) == 100 - RESERVED
            assert _status(engine) == GenerationStatus.SETTLED

    @pytest.mark.asyncio
    async def test_close_after_completion_keeps_settlement(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, FakeChatProvider(COMPLETE))

            async with await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES) as stream:
                async for _ in stream:
                    pass

            assert _balance(engine) == 100 - CHARGED
            assert _status(engine) == GenerationStatus.SETTLED


class TestStreamTermination:
    """Test error, early close and cancellation paths."""

    @pytest.mark.asyncio
    async def test_upstream_error_releases_and_reraises(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeChatProvider([ChatChunk(text="partial")], error=RuntimeError("upstream broke"))
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, provider)

            stream = await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)
            with pytest.raises(RuntimeError, match="upstream broke"):
                async for _ in stream:
                    pass

            assert _balance(engine) == 100
            assert _status(engine) == GenerationStatus.RELEASED
            assert stream.settlement.state == SettlementState.RELEASED

    @pytest.mark.asyncio
    async def test_consumer_closing_early_releases(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, FakeChatProvider(COMPLETE))

            async with await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES) as stream:
                async for _ in stream:
                    break

            assert _balance(engine) == 100
            assert _status(engine) == GenerationStatus.RELEASED

    @pytest.mark.asyncio
    async def test_cancellation_releases(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeChatProvider([ChatChunk(text="first")], hang=True)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, provider)
            stream = await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)
            first_chunk = asyncio.Event()

            async def consume():
                async for _ in stream:
                    first_chunk.set()

            task = asyncio.ensure_future(consume())
            await first_chunk.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            assert _balance(engine) == 100
            assert _status(engine) == GenerationStatus.RELEASED

    @pytest.mark.asyncio
    async def test_open_failure_releases(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeChatProvider(open_error=RuntimeError("rate limited"))
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, provider)

            with pytest.raises(RuntimeError, match="rate limited"):
                await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)

            assert _balance(engine) == 100
            assert _status(engine) == GenerationStatus.RELEASED


class TestStreamAdmission:
    """Test checks made before streaming starts."""

    @pytest.mark.asyncio
    async def test_unpriced_model_rejected_before_reserving(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            provider = FakeChatProvider(COMPLETE)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, provider)

            with pytest.raises(ModelUnavailable):
                await orchestrator.open_stream("acct", "g1", "unknown/model", MESSAGES)

            assert provider.calls == 0
            assert _status(engine) == GenerationStatus.NONE

    @pytest.mark.asyncio
    async def test_insufficient_credits_never_opens_stream(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, balance=3)
            provider = FakeChatProvider(COMPLETE)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, provider)

            with pytest.raises(InsufficientCredits):
                await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)
            assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_unlimited_account_streams_unmetered(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir, balance=0)
            engine.set_tier("acct", AccountTier.UNLIMITED)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, FakeChatProvider(COMPLETE))

            stream = await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)
            texts = [text async for text in stream]

            assert texts == ["Hel", "lo"]
            assert stream.settlement is None
            assert _balance(engine) == 0
            assert _status(engine) == GenerationStatus.BYPASSED


class TestStreamSettlement:
    """Test the exactly-once state machine directly."""

    @pytest.mark.asyncio
    async def test_racing_settle_and_release_share_one_outcome(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            engine.reserve("acct", "g1", 10, MODEL)
            settlement = StreamSettlement(engine, "acct", "g1", 10, MODEL)

            settled, released = await asyncio.gather(settlement.settle(4), settlement.release())

            assert settled is released
            assert settlement.state == SettlementState.SETTLED
            assert settlement.outcome is settled
            assert _balance(engine) == 96

    @pytest.mark.asyncio
    async def test_later_calls_do_nothing(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            engine.reserve("acct", "g1", 10, MODEL)
            settlement = StreamSettlement(engine, "acct", "g1", 10, MODEL)
            assert settlement.state == SettlementState.PENDING
            assert settlement.outcome is None

            first = await settlement.release()
            second = await settlement.settle(4)

            assert first is second
            assert first.released == 10
            assert settlement.state == SettlementState.RELEASED
            assert _balance(engine) == 100

    @pytest.mark.asyncio
    async def test_failed_settle_leaves_release_available(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            engine.reserve("acct", "g1", 10, MODEL)
            settlement = StreamSettlement(engine, "acct", "g1", 10, MODEL)

            locked = sqlite3.OperationalError("database is locked")
            with patch.object(engine, "settle", side_effect=locked):
                with pytest.raises(sqlite3.OperationalError):
                    await settlement.settle(4)
            assert settlement.state == SettlementState.PENDING
            assert settlement.outcome is None

            result = await settlement.release()

            assert result.released == 10
            assert settlement.state == SettlementState.RELEASED
            assert _status(engine) == GenerationStatus.RELEASED
            assert _balance(engine) == 100


class TestStreamRecovery:
    """Test streams whose settlement fails or that are abandoned."""

    @pytest.mark.asyncio
    async def test_settle_failure_at_end_of_stream_releases(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, FakeChatProvider(COMPLETE))
            stream = await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)

            locked = sqlite3.OperationalError("database is locked")
            with patch.object(engine, "settle", side_effect=locked):
                with pytest.raises(sqlite3.OperationalError):
                    async for _ in stream:
                        pass

            assert _balance(engine) == 100
            assert _status(engine) == GenerationStatus.RELEASED

    @pytest.mark.asyncio
    async def test_abandoned_stream_is_released_when_collected(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            engine = _engine(temp_dir)
            orchestrator = ChatSettlementOrchestrator(engine, ORACLE, FakeChatProvider(COMPLETE))
            stream = await orchestrator.open_stream("acct", "g1", MODEL, MESSAGES)

            async for _ in stream:
                break
            del stream

            for _ in range(200):
                if _status(engine) == GenerationStatus.RELEASED:
                    break
                await asyncio.sleep(0.01)

            assert _status(engine) == GenerationStatus.RELEASED
            assert _balance(engine) == 100
