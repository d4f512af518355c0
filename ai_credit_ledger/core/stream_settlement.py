"""
Streaming settlement.

A chat stream's cost is only known once the provider has finished, and a
stream can end in many ways: normal completion, an upstream error, the
consumer closing it early, or task cancellation. Exactly one of
settle/release must take effect for each of them.

:class:`StreamSettlement` is the state machine that guarantees it::

    PENDING -> SETTLING -> SETTLED
    PENDING -> RELEASING -> RELEASED

The first transition out of PENDING starts a single settlement task; every
later ``settle``/``release`` call awaits that same task and does nothing else.
A transition whose ledger call fails returns to PENDING, so a later
``release`` can still return the reservation.
The ledger's own idempotency backs this up across processes.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

import structlog

from ai_credit_ledger.config.loader import LedgerConfig

from .errors import ModelUnavailable
from .ledger import LedgerEngine, ReleaseResult, SettleResult
from .pricing import (
    ModelPrice,
    PricingOracle,
    chat_cost_usd,
    chat_credits,
    estimate_chat_reservation,
)
from .token_counter import TokenUsage

logger = structlog.get_logger()

Outcome = Union[SettleResult, ReleaseResult]


@dataclass(frozen=True)
class ChatChunk:
    """One piece of an upstream chat stream.

    ``usage`` is set on the chunk that reports final token usage, usually
    the last one.
    """
    text: str = ""
    usage: Optional[TokenUsage] = None


class ChatStreamProvider(Protocol):
    """Opens a streaming chat completion upstream."""

    async def open_chat_stream(
        self,
        model_id: str,
        messages: List[Dict[str, str]]
    ) -> AsyncIterator[ChatChunk]:
        ...


class SettlementState(Enum):
    PENDING = "pending"
    SETTLING = "settling"
    SETTLED = "settled"
    RELEASING = "releasing"
    RELEASED = "released"


class StreamSettlement:
    """Exactly-once settle-or-release for one reserved generation.

    Args:
        ledger: Ledger engine holding the reservation
        account_id: Account the reservation was made on
        generation_id: Generation being settled
        reserved_amount: Credits reserved for the generation
        model_id: Model used by the generation
    """

    def __init__(
        self,
        ledger: LedgerEngine,
        account_id: str,
        generation_id: str,
        reserved_amount: int,
        model_id: str,
    ):
        self.ledger = ledger
        self.account_id = account_id
        self.generation_id = generation_id
        self.reserved_amount = reserved_amount
        self.model_id = model_id
        self._state = SettlementState.PENDING
        self._task: Optional[asyncio.Future] = None

    @property
    def state(self) -> SettlementState:
        return self._state

    @property
    def outcome(self) -> Optional[Outcome]:
        """Result of the settlement task once it has completed successfully."""
        if self._task is None or not self._task.done() or self._task.cancelled():
            return None
        if self._task.exception() is not None:
            return None
        return self._task.result()

    def _can_start(self) -> bool:
        """No transition yet, or the last one failed and left the reservation outstanding."""
        if self._task is None:
            return True
        return self._task.done() and (self._task.cancelled() or self._task.exception() is not None)

    async def settle(self, actual_amount: int, cost_usd: Optional[float] = None) -> Outcome:
        """Settle with the actual amount, unless a transition already started.

        Returns the outcome of whichever transition won.
        """
        if self._can_start():
            self._state = SettlementState.SETTLING
            self._task = asyncio.ensure_future(self._run_settle(actual_amount, cost_usd))
        return await asyncio.shield(self._task)

    async def release(self) -> Outcome:
        """Release the reservation, unless a transition already started."""
        if self._can_start():
            self._state = SettlementState.RELEASING
            self._task = asyncio.ensure_future(self._run_release())
        return await asyncio.shield(self._task)

    async def _run_settle(self, actual_amount: int, cost_usd: Optional[float]) -> SettleResult:
        try:
            result = await asyncio.to_thread(
                self.ledger.settle,
                self.account_id,
                self.generation_id,
                self.reserved_amount,
                actual_amount,
                self.model_id,
                cost_usd,
            )
        except BaseException:
            self._state = SettlementState.PENDING
            raise
        self._state = SettlementState.SETTLED
        return result

    async def _run_release(self) -> ReleaseResult:
        try:
            result = await asyncio.to_thread(
                self.ledger.release, self.account_id, self.generation_id
            )
        except BaseException:
            self._state = SettlementState.PENDING
            raise
        self._state = SettlementState.RELEASED
        return result


class MeteredChatStream:
    """Async iterator of text deltas that settles the generation it streams.

    - Upstream completes: settle from reported usage before iteration ends.
    - Upstream raises: release, then re-raise.
    - ``aclose()``, early exit from ``async with`` or cancellation: release.

    Consume it with ``async with`` (or call ``aclose()``) when iteration may
    stop early: a stream dropped mid-iteration is only released when it is
    garbage collected inside a running event loop.

    ``settlement`` is None for unlimited accounts, which stream unmetered.
    """

    def __init__(
        self,
        upstream: AsyncIterator[ChatChunk],
        settlement: Optional[StreamSettlement],
        price: ModelPrice,
        config: LedgerConfig,
    ):
        self._upstream = upstream
        self._iterator = upstream.__aiter__()
        self.settlement = settlement
        self._price = price
        self._config = config
        self.usage: Optional[TokenUsage] = None
        self.outcome: Optional[Outcome] = None
        self._closed = False

    def __aiter__(self) -> "MeteredChatStream":
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        while True:
            try:
                chunk = await self._iterator.__anext__()
            except StopAsyncIteration:
                self._closed = True
                await self._finish()
                raise
            except BaseException:
                self._closed = True
                await self._abort()
                raise
            if chunk.usage is not None:
                self.usage = chunk.usage
            if chunk.text:
                return chunk.text

    async def aclose(self) -> None:
        """Stop the stream; releases the reservation unless already settled."""
        self._closed = True
        try:
            await self._abort()
        finally:
            close = getattr(self._upstream, "aclose", None)
            if close is not None:
                await close()

    async def __aenter__(self) -> "MeteredChatStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def __del__(self):
        # Abandoned without aclose(): release from the running loop if possible
        settlement = getattr(self, "settlement", None)
        if settlement is None or settlement.state != SettlementState.PENDING:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "chat_stream_abandoned",
                account_id=settlement.account_id,
                generation_id=settlement.generation_id,
            )
            return
        loop.create_task(settlement.release())

    async def _finish(self) -> None:
        if self.settlement is None:
            return
        if self.usage is None:
            # No usage reported: charge what was reserved
            actual_amount = self.settlement.reserved_amount
            cost_usd = None
            logger.warning(
                "chat_usage_missing",
                account_id=self.settlement.account_id,
                generation_id=self.settlement.generation_id,
                charged=actual_amount,
            )
        else:
            actual_amount = chat_credits(
                self.usage, self._price, self._config.credits, self._config.chat
            )
            cost_usd = float(chat_cost_usd(self.usage, self._price))
        try:
            self.outcome = await self.settlement.settle(actual_amount, cost_usd)
        except Exception:
            logger.exception(
                "chat_settlement_failed",
                account_id=self.settlement.account_id,
                generation_id=self.settlement.generation_id,
            )
            try:
                await self._abort()
            except Exception:
                logger.exception(
                    "reservation_release_failed",
                    account_id=self.settlement.account_id,
                    generation_id=self.settlement.generation_id,
                )
            raise

    async def _abort(self) -> None:
        if self.settlement is None:
            return
        self.outcome = await self.settlement.release()


class ChatSettlementOrchestrator:
    """Reserve, stream and settle one chat generation.

    Args:
        ledger: Ledger engine
        oracle: Pricing oracle for chat models
        provider: Upstream chat stream provider
        config: Ledger configuration (built-in defaults when None)
    """

    def __init__(
        self,
        ledger: LedgerEngine,
        oracle: PricingOracle,
        provider: ChatStreamProvider,
        config: Optional[LedgerConfig] = None,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.provider = provider
        self.config = config or ledger.config

    async def open_stream(
        self,
        account_id: str,
        generation_id: str,
        model_id: str,
        messages: List[Dict[str, Any]],
    ) -> MeteredChatStream:
        """Reserve credits and open a metered stream.

        Raises:
            ValueError: If messages is empty
            ModelUnavailable: If the model has no chat price
            DailyLimitExceeded: If the estimate exceeds today's remaining budget
            InsufficientCredits: If the balance cannot cover the estimate
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        price = await asyncio.to_thread(self.oracle.price, model_id)
        if price is None or not price.is_chat_priced:
            raise ModelUnavailable(model_id)

        estimate = estimate_chat_reservation(price, self.config.credits, self.config.chat)
        reservation = await asyncio.to_thread(
            self.ledger.reserve,
            account_id,
            generation_id,
            estimate.credits,
            model_id,
            estimate.cost_usd,
            "chat",
        )

        settlement = None
        if not reservation.bypassed:
            settlement = StreamSettlement(
                self.ledger, account_id, generation_id, estimate.credits, model_id
            )

        try:
            upstream = await self.provider.open_chat_stream(model_id, messages)
        except BaseException:
            if settlement is not None:
                await settlement.release()
            raise

        logger.info(
            "chat_stream_opened",
            account_id=account_id,
            generation_id=generation_id,
            model_id=model_id,
            reserved=estimate.credits,
            bypassed=reservation.bypassed,
        )
        return MeteredChatStream(upstream, settlement, price, self.config)
