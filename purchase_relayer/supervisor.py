"""
Connection supervisor for the source-chain subscription.

Owns the transport lifecycle: connected -> disconnected -> reconnecting ->
connected. Every (re)subscription replays the block gap since the last
checkpoint before the live stream resumes, so events emitted while the
connection was down are still delivered.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from .channel import EventChannel
from .errors import TransportFailure
from .models import ConnectionState
from .subscriber import ChainLogSubscriber

logger = structlog.get_logger()


@dataclass
class ReconnectPolicy:
    """Exponential backoff. `max_retries=None` retries forever."""

    initial_delay: float = 5.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    max_retries: Optional[int] = None

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


class ConnectionSupervisor:
    def __init__(
        self,
        subscriber: ChainLogSubscriber,
        channel: EventChannel,
        policy: Optional[ReconnectPolicy] = None,
        startup_lookback_blocks: int = 0,
        replay_chunk_blocks: int = 2_000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.subscriber = subscriber
        self.channel = channel
        self.policy = policy or ReconnectPolicy()
        self.startup_lookback_blocks = startup_lookback_blocks
        self.replay_chunk_blocks = max(replay_chunk_blocks, 1)
        self._sleep = sleep

        self.state: Optional[ConnectionState] = None
        self.transitions: list[ConnectionState] = []
        self.reconnects = 0
        self._running = False
        self._low_water: Optional[int] = None

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        previous = self.state
        self.state = state
        self.transitions.append(state)
        logger.info(
            "connection_state_changed",
            previous=previous.value if previous else None,
            state=state.value,
        )

    async def run(self) -> None:
        """Supervise until stopped. Retries indefinitely unless the policy caps it."""
        self._running = True
        failures = 0

        try:
            while self._running:
                try:
                    if self.state is ConnectionState.DISCONNECTED:
                        self._set_state(ConnectionState.RECONNECTING)
                        self.reconnects += 1

                    await self._establish()
                    self._set_state(ConnectionState.CONNECTED)
                    failures = 0

                    async for event in self.subscriber.stream():
                        await self.channel.put(event)
                        # Logs arrive in block order; earlier blocks are complete
                        self.channel.mark_scanned(event.block_number - 1)

                except TransportFailure as e:
                    logger.error(
                        "source_transport_failure",
                        error=str(e),
                        state=self.state.value if self.state else None,
                    )

                await self.subscriber.disconnect()
                if not self._running:
                    break

                if self.state in (ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
                    self._set_state(ConnectionState.DISCONNECTED)

                failures += 1
                if self.policy.max_retries is not None and failures > self.policy.max_retries:
                    raise TransportFailure(
                        f"giving up after {self.policy.max_retries} reconnect attempts"
                    )

                delay = self.policy.delay(failures)
                logger.info("source_reconnect_scheduled", delay=delay, attempt=failures)
                await self._sleep(delay)
        finally:
            self._running = False
            await self.subscriber.disconnect()

    def stop(self) -> None:
        self._running = False

    async def _establish(self) -> None:
        """Connect, subscribe, then replay the gap up to the current head."""
        await self.subscriber.connect()
        await self.subscriber.subscribe()
        await self.replay_gap()

    async def replay_gap(self) -> int:
        """
        Re-scan `[checkpoint + 1, head]` and feed the events to the channel.

        Returns the number of events replayed.
        """
        head = await self.subscriber.head_block()
        checkpoint = self.channel.checkpoint

        if checkpoint is not None:
            from_block = checkpoint + 1
        elif self._low_water is not None:
            from_block = self._low_water
        else:
            from_block = max(head - self.startup_lookback_blocks, 0)
            self._low_water = from_block

        if from_block > head:
            return 0

        logger.info("gap_replay_started", from_block=from_block, to_block=head)

        replayed = 0
        start = from_block
        while start <= head:
            end = min(start + self.replay_chunk_blocks - 1, head)
            events = await self.subscriber.fetch_range(start, end)
            for event in events:
                await self.channel.put(event)
            replayed += len(events)
            self.channel.mark_scanned(end)
            start = end + 1

        logger.info("gap_replay_finished", from_block=from_block, to_block=head, events=replayed)
        return replayed
