from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from domain.models import GameKind, Wager, to_money
from domain.repositories import AccountRepository, WagerRepository
from domain.rounds import (
    CURVE_TICK_SECONDS,
    FAILURE_CHANCE_PER_SECOND,
    FAILURE_TICK_SECONDS,
    REVEAL_SECONDS,
    ROUND_SECONDS,
    current_round_index,
    curve_point,
    multiplier_at,
    parity_outcome_for,
    quantize_multiplier,
    time_until_next_round,
)

from .services import (
    OperationResult,
    WagerResult,
    fail_rising_multiplier_game,
    get_wager_history,
    place_parity_wager,
    start_rising_multiplier_game,
    stop_rising_multiplier_game,
)


logger = logging.getLogger(__name__)

SESSION_CLOSED = "Session closed."
IDLE_SESSION_SECONDS = 10 * ROUND_SECONDS


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class SessionEvent:
    """Something a live session wants its player to know about."""

    kind: str
    account_id: str
    multiplier: Optional[Decimal] = None
    payout: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    outcome: Optional[str] = None
    round_index: Optional[int] = None
    message: str = ""
    settled: List[Wager] = field(default_factory=list)


EventHandler = Callable[[SessionEvent], Awaitable[None]]


@dataclass
class StopResult:
    success: bool
    error_message: Optional[str] = None
    multiplier: Optional[Decimal] = None
    payout: Optional[Decimal] = None
    balance: Optional[Decimal] = None
    race_lost: bool = False


async def _emit(handler: Optional[EventHandler], event: SessionEvent) -> None:
    if handler is None:
        return
    try:
        await handler(event)
    except Exception:  # Delivery problems must not take the session down.
        logger.exception("Event handler failed for %s", event.kind)


_START = "start"
_STOP = "stop"
_RESET = "reset"
_DISPOSE = "dispose"
_CURVE_TICK = "curve_tick"
_FAILURE_TICK = "failure_tick"


class RisingMultiplierSession:
    """
    One player's rising-multiplier game.

    All state belongs to a single actor task that handles messages in
    arrival order. The two timers only post tick messages, so a Stop
    request and a failure tick can never both settle the same game:
    whichever the actor sees first wins and the other finds the game no
    longer running.
    """

    def __init__(
        self,
        account_id: str,
        account_repo: AccountRepository,
        wager_repo: WagerRepository,
        on_event: Optional[EventHandler] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        curve_interval: float = CURVE_TICK_SECONDS,
        failure_interval: float = FAILURE_TICK_SECONDS,
        failure_chance: float = FAILURE_CHANCE_PER_SECOND,
    ) -> None:
        self.account_id = account_id
        self._account_repo = account_repo
        self._wager_repo = wager_repo
        self._on_event = on_event
        self._clock = clock
        self._rng = rng or random.Random()
        self._curve_interval = curve_interval
        self._failure_interval = failure_interval
        self._failure_chance = failure_chance

        self.state = SessionState.IDLE
        self.stake: Optional[Decimal] = None
        self.curve: List[Tuple[float, float]] = []
        self._multiplier = 1.0
        self._started_at = 0.0
        self._generation = 0

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._actor: Optional[asyncio.Task] = None
        self._timers: List[asyncio.Task] = []
        self._closing = False

    @property
    def multiplier(self) -> Decimal:
        return quantize_multiplier(self._multiplier)

    @property
    def potential_payout(self) -> Decimal:
        if self.stake is None:
            return Decimal("0.00")
        return to_money(self.stake * self.multiplier)

    async def start(self, stake) -> OperationResult:
        return await self._ask(_START, stake)

    async def stop(self) -> StopResult:
        return await self._ask(_STOP)

    async def reset(self) -> SessionState:
        return await self._ask(_RESET)

    async def dispose(self) -> None:
        """
        Tear the session down. A game still running is recorded as failed,
        since its stake was already taken. Requests arriving from now on are
        answered with a "Session closed." failure.
        """

        if self._closing:
            return
        self._closing = True
        if self._actor is not None and not self._actor.done():
            await self._send(_DISPOSE)
        self._cancel_timers()

    @staticmethod
    def _closed_result(kind: str):
        if kind == _STOP:
            return StopResult(success=False, error_message=SESSION_CLOSED)
        return OperationResult(success=False, error_message=SESSION_CLOSED)

    async def _ask(self, kind: str, *args):
        if self._closing:
            return self._closed_result(kind)
        return await self._send(kind, *args)

    async def _send(self, kind: str, *args):
        if self._actor is None or self._actor.done():
            self._actor = asyncio.create_task(self._run(), name=f"rising-{self.account_id}")
        reply = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((kind, self._generation, args, reply))
        return await reply

    async def _run(self) -> None:
        while True:
            kind, generation, args, reply = await self._inbox.get()
            try:
                outcome = await self._handle(kind, generation, args)
            except Exception as exc:
                if reply is None:
                    logger.exception("Rising session %s failed on %s", self.account_id, kind)
                elif not reply.done():
                    reply.set_exception(exc)
            else:
                if reply is not None and not reply.done():
                    reply.set_result(outcome)
            if kind == _DISPOSE:
                self._drain_inbox()
                return

    def _drain_inbox(self) -> None:
        """Answer whatever queued up behind the dispose request."""

        while not self._inbox.empty():
            kind, _, _, reply = self._inbox.get_nowait()
            if reply is not None and not reply.done():
                reply.set_result(self._closed_result(kind))

    async def _handle(self, kind: str, generation: int, args):
        if kind == _CURVE_TICK:
            if self._is_live(generation):
                self._advance_curve()
            return None
        if kind == _FAILURE_TICK:
            if self._is_live(generation) and self._rng.random() < self._failure_chance:
                await self._settle_failure("The game failed.")
            return None
        if kind == _START:
            return await self._on_start(*args)
        if kind == _STOP:
            return await self._on_stop()
        if kind == _RESET:
            if self.state is not SessionState.RUNNING:
                self.state = SessionState.IDLE
                self.curve = []
            return self.state
        if kind == _DISPOSE:
            if self.state is SessionState.RUNNING:
                await self._settle_failure("Disconnected while the game was running.")
            self._cancel_timers()
            return None
        raise ValueError(f"Unknown session message: {kind}")

    def _is_live(self, generation: int) -> bool:
        return self.state is SessionState.RUNNING and generation == self._generation

    async def _on_start(self, stake) -> OperationResult:
        if self.state is SessionState.RUNNING:
            return OperationResult(success=False, error_message="A game is already running.")

        result = await asyncio.to_thread(
            start_rising_multiplier_game, self.account_id, stake, self._account_repo
        )
        if not result.success:
            return result

        self._generation += 1
        self.state = SessionState.RUNNING
        self.stake = to_money(stake)
        self._started_at = self._clock()
        self._multiplier = 1.0
        self.curve = [curve_point(0.0)]
        self._start_timers()

        logger.info("Rising game started for %s, stake %s", self.account_id, self.stake)
        await _emit(
            self._on_event,
            SessionEvent("started", self.account_id, multiplier=self.multiplier, balance=result.balance),
        )
        return result

    def _advance_curve(self) -> None:
        elapsed = self._clock() - self._started_at
        self._multiplier = max(self._multiplier, multiplier_at(elapsed))
        self.curve.append(curve_point(elapsed))

    async def _on_stop(self) -> StopResult:
        if self.state is not SessionState.RUNNING:
            race_lost = self.state is SessionState.FAILED
            if race_lost:
                logger.info("Stop from %s arrived after the game failed", self.account_id)
            return StopResult(
                success=False,
                error_message="The game already failed." if race_lost else "No game is running.",
                race_lost=race_lost,
            )

        self._advance_curve()
        locked = self.multiplier
        result: WagerResult = await asyncio.to_thread(
            stop_rising_multiplier_game,
            self.account_id,
            self.stake,
            locked,
            self._account_repo,
            self._wager_repo,
        )
        if not result.success:
            return StopResult(success=False, error_message=result.error_message, multiplier=locked)

        self._cancel_timers()
        self.state = SessionState.STOPPED
        payout = result.wager.payout
        await _emit(
            self._on_event,
            SessionEvent("stopped", self.account_id, multiplier=locked, payout=payout, balance=result.balance),
        )
        self.state = SessionState.IDLE
        self.stake = None
        return StopResult(success=True, multiplier=locked, payout=payout, balance=result.balance)

    async def _settle_failure(self, message: str) -> None:
        self._cancel_timers()
        self.state = SessionState.FAILED
        result = await asyncio.to_thread(
            fail_rising_multiplier_game, self.account_id, self.stake, self._wager_repo
        )
        if not result.success:
            logger.error("Could not record failed game for %s: %s", self.account_id, result.error_message)
        logger.info("Rising game of %s failed at x%s", self.account_id, self.multiplier)
        await _emit(
            self._on_event,
            SessionEvent("failed", self.account_id, multiplier=self.multiplier, message=message),
        )

    def _start_timers(self) -> None:
        self._cancel_timers()
        generation = self._generation
        self._timers = [
            asyncio.create_task(self._tick_every(self._curve_interval, _CURVE_TICK, generation)),
            asyncio.create_task(self._tick_every(self._failure_interval, _FAILURE_TICK, generation)),
        ]

    async def _tick_every(self, interval: float, kind: str, generation: int) -> None:
        while True:
            await asyncio.sleep(interval)
            self._inbox.put_nowait((kind, generation, (), None))

    def _cancel_timers(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []


class ParityRoundSession:
    """
    A player's view of the 30-second parity game.

    Ticks once a second. When a new round starts it shows the round's
    draw, refreshes balance and history (which settles finished rounds)
    and opens a short reveal window.
    """

    def __init__(
        self,
        account_id: str,
        account_repo: AccountRepository,
        wager_repo: WagerRepository,
        on_event: Optional[EventHandler] = None,
        clock: Callable[[], float] = time.time,
        tick_interval: float = 1.0,
        reveal_seconds: float = REVEAL_SECONDS,
    ) -> None:
        self.account_id = account_id
        self._account_repo = account_repo
        self._wager_repo = wager_repo
        self._on_event = on_event
        self._clock = clock
        self._tick_interval = tick_interval
        self._reveal_seconds = reveal_seconds

        self.round_index: Optional[int] = None
        self.time_left = 0
        self.current_outcome: Optional[str] = None
        self.balance: Optional[Decimal] = None
        self.wagers: List[Wager] = []
        self.reveal_started_at: Optional[float] = None
        self.reveal_ends_at: Optional[float] = None
        self._revealed_round: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    def is_revealing(self, now: Optional[float] = None) -> bool:
        if self.reveal_started_at is None or self.reveal_ends_at is None:
            return False
        now = self._clock() if now is None else now
        return self.reveal_started_at <= now < self.reveal_ends_at

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        now = self._clock()
        self.round_index = current_round_index(now)
        self.time_left = time_until_next_round(now)
        self.current_outcome = parity_outcome_for(self.round_index)
        await self._refresh()
        self._task = asyncio.create_task(self._run(), name=f"parity-{self.account_id}")

    async def dispose(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def place_wager(self, choice: str, stake) -> WagerResult:
        result = await asyncio.to_thread(
            place_parity_wager, self.account_id, choice, stake, self._account_repo, self._wager_repo
        )
        if result.success:
            await self._refresh()
        return result

    async def tick(self) -> None:
        now = self._clock()
        round_index = current_round_index(now)
        self.time_left = time_until_next_round(now)

        if self.round_index is not None and round_index > self.round_index:
            self.round_index = round_index
            await self._on_new_round(round_index, now)
        elif self.round_index is None:
            self.round_index = round_index

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Parity tick failed for %s", self.account_id)

    async def _on_new_round(self, round_index: int, now: float) -> None:
        if self._revealed_round == round_index:
            return
        self._revealed_round = round_index
        self.reveal_started_at = now
        self.reveal_ends_at = now + self._reveal_seconds

        self.current_outcome = parity_outcome_for(round_index)
        settled = await self._refresh()
        await _emit(
            self._on_event,
            SessionEvent(
                "round",
                self.account_id,
                outcome=self.current_outcome,
                round_index=round_index,
                balance=self.balance,
                settled=settled,
            ),
        )

    async def _refresh(self) -> List[Wager]:
        """Reload balance and history; return the wagers settled since the last load."""

        was_pending = {w.id for w in self.wagers if w.is_pending}
        history = await asyncio.to_thread(
            get_wager_history, self.account_id, self._account_repo, self._wager_repo, GameKind.PARITY
        )
        if not history.success:
            logger.warning("Could not refresh parity history of %s: %s", self.account_id, history.error_message)
            return []
        self.balance = history.balance
        self.wagers = history.wagers
        return [w for w in self.wagers if w.id in was_pending and not w.is_pending]


class GameSessionRegistry:
    """
    Owns every live session, at most one of each game per account.

    Sessions of an account that has not touched either game for
    `idle_seconds` are disposed by `expire_idle`, which `run()` calls
    periodically. An account with a rising game still running is never
    expired.
    """

    def __init__(
        self,
        account_repo: AccountRepository,
        wager_repo: WagerRepository,
        on_event: Optional[EventHandler] = None,
        idle_seconds: float = IDLE_SESSION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._account_repo = account_repo
        self._wager_repo = wager_repo
        # Read when a session is created, so front-ends may set it after
        # constructing the registry.
        self.on_event = on_event
        self._idle_seconds = idle_seconds
        self._clock = clock
        self._rising: Dict[str, RisingMultiplierSession] = {}
        self._parity: Dict[str, ParityRoundSession] = {}
        self._last_seen: Dict[str, float] = {}
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(set(self._rising) | set(self._parity))

    def touch(self, account_id: str) -> None:
        self._last_seen[account_id] = self._clock()

    def rising(self, account_id: str) -> RisingMultiplierSession:
        self.touch(account_id)
        session = self._rising.get(account_id)
        if session is None:
            session = RisingMultiplierSession(
                account_id, self._account_repo, self._wager_repo, on_event=self.on_event
            )
            self._rising[account_id] = session
        return session

    async def parity(self, account_id: str) -> ParityRoundSession:
        self.touch(account_id)
        session = self._parity.get(account_id)
        if session is None:
            session = ParityRoundSession(
                account_id, self._account_repo, self._wager_repo, on_event=self.on_event
            )
            self._parity[account_id] = session
            await session.start()
        return session

    async def expire_idle(self) -> List[str]:
        """Dispose the sessions of idle accounts and return their IDs."""

        cutoff = self._clock() - self._idle_seconds
        expired = []
        for account_id in set(self._rising) | set(self._parity):
            rising = self._rising.get(account_id)
            if rising is not None and rising.state is SessionState.RUNNING:
                continue
            if self._last_seen.get(account_id, 0.0) > cutoff:
                continue
            await self.discard(account_id)
            expired.append(account_id)
        if expired:
            logger.info("Expired idle sessions of %d accounts", len(expired))
        return expired

    async def run(self, interval: float = ROUND_SECONDS) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.expire_idle()
            except Exception:
                logger.exception("Session expiry failed")

    def start(self, interval: float = ROUND_SECONDS) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(interval), name="session-expiry")
        return self._task

    async def discard(self, account_id: str) -> None:
        self._last_seen.pop(account_id, None)
        rising = self._rising.pop(account_id, None)
        if rising is not None:
            await rising.dispose()
        parity = self._parity.pop(account_id, None)
        if parity is not None:
            await parity.dispose()

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for account_id in set(self._rising) | set(self._parity):
            await self.discard(account_id)
