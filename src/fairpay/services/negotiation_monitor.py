"""Negotiation monitor: keeps watched negotiations in sync with the ledger.

Two independent triggers feed one serialized updater per negotiation id:

- ledger events (created, ranges submitted, match started/revealed,
  callback failed) request a re-fetch of the affected negotiation;
- a periodic sweep re-fetches every watched negotiation, because event
  delivery is not guaranteed (missed events, reconnects, provider gaps).

Every re-fetch replaces the whole snapshot; nothing is patched field by
field, so state and handles are always from the same read.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from fairpay.domain.models import LedgerEvent, Negotiation, NegotiationProgress
from fairpay.infra.ledger import LedgerClient
from fairpay.services.negotiation_state_machine import NegotiationStateMachine

logger = logging.getLogger(__name__)

# Per-subscriber buffer; the oldest snapshot is dropped when a reader lags
SUBSCRIBER_QUEUE_SIZE = 32

_CLOSED = object()


def _offer(queue: asyncio.Queue, item) -> None:
    if queue.full():
        queue.get_nowait()
    queue.put_nowait(item)


@dataclass
class _WatchSlot:
    negotiation_id: int
    latest: NegotiationProgress
    subscribers: set = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: asyncio.Queue = field(default_factory=asyncio.Queue)
    updater: Optional[asyncio.Task] = None


class NegotiationSubscription:
    """Async iterator over the snapshots published for one negotiation."""

    def __init__(self, monitor: "NegotiationMonitor", negotiation_id: int, queue: asyncio.Queue):
        self._monitor = monitor
        self.negotiation_id = negotiation_id
        self._queue = queue
        self.closed = False

    def __aiter__(self) -> "NegotiationSubscription":
        return self

    async def __anext__(self) -> NegotiationProgress:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self.closed = True
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if not self.closed:
            self._monitor._unsubscribe(self.negotiation_id, self._queue)
            self.closed = True


class NegotiationMonitor:
    """Owns the snapshot map; the only component that writes to it."""

    def __init__(self, ledger: LedgerClient, sync_interval: float = 30.0):
        self.ledger = ledger
        self.sync_interval = sync_interval
        self._slots: dict[int, _WatchSlot] = {}
        self._listening = False
        self._sweep_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic sweep."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Negotiation monitor started (sweep every %ss)", self.sync_interval)

    async def stop(self) -> None:
        """Stop the sweep, release every watch slot and detach event listeners."""
        tasks = []
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            tasks.append(self._sweep_task)
            self._sweep_task = None

        for slot in list(self._slots.values()):
            for queue in list(slot.subscribers):
                _offer(queue, _CLOSED)
            if slot.updater is not None:
                slot.updater.cancel()
                tasks.append(slot.updater)
        self._slots.clear()
        self._teardown_listeners()

        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Negotiation monitor stopped")

    @property
    def watched_ids(self) -> list[int]:
        return list(self._slots)

    @property
    def is_listening(self) -> bool:
        return self._listening

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def watch(self, negotiation_id: int) -> NegotiationSubscription:
        """Subscribe to one negotiation; the latest snapshot is delivered first."""
        slot = self._slots.get(negotiation_id)
        created = slot is None
        if slot is None:
            slot = _WatchSlot(negotiation_id, NegotiationProgress.loading(negotiation_id))
            self._slots[negotiation_id] = slot
            slot.updater = asyncio.create_task(self._run_updater(slot))
            self._ensure_listeners()

        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        queue.put_nowait(slot.latest)
        slot.subscribers.add(queue)

        if created:
            self.request_refresh(negotiation_id, "watch")
        return NegotiationSubscription(self, negotiation_id, queue)

    def current(self, negotiation_id: int) -> Optional[NegotiationProgress]:
        slot = self._slots.get(negotiation_id)
        return slot.latest if slot else None

    def _unsubscribe(self, negotiation_id: int, queue: asyncio.Queue) -> None:
        slot = self._slots.get(negotiation_id)
        if slot is None:
            return
        slot.subscribers.discard(queue)
        _offer(queue, _CLOSED)
        if slot.subscribers:
            return

        del self._slots[negotiation_id]
        if slot.updater is not None:
            slot.updater.cancel()
        logger.debug("Released watch slot for negotiation %s", negotiation_id)
        if not self._slots:
            self._teardown_listeners()

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def request_refresh(self, negotiation_id: int, reason: str) -> None:
        """Queue a re-fetch for a watched negotiation; unwatched ids are ignored."""
        slot = self._slots.get(negotiation_id)
        if slot is not None:
            slot.pending.put_nowait(reason)

    async def refresh(self, negotiation_id: int) -> NegotiationProgress:
        """Re-read one negotiation now and publish it if it is watched."""
        slot = self._slots.get(negotiation_id)
        if slot is None:
            return await self._fetch(negotiation_id)
        return await self._refresh_slot(slot)

    async def refresh_all(self) -> None:
        """Re-fetch every watched negotiation, one after another."""
        for negotiation_id in list(self._slots):
            slot = self._slots.get(negotiation_id)
            if slot is None:
                continue
            try:
                await self._refresh_slot(slot)
            except Exception as exc:
                logger.error("Sweep refresh of negotiation %s failed: %s", negotiation_id, exc)

    async def load_user_negotiations(self, address: str) -> list[NegotiationProgress]:
        """Fetch a snapshot of every negotiation *address* takes part in."""
        ids = await self.ledger.get_user_negotiations(address)
        return [await self.refresh(negotiation_id) for negotiation_id in ids]

    async def _refresh_slot(self, slot: _WatchSlot) -> NegotiationProgress:
        async with slot.lock:
            progress = await self._fetch(slot.negotiation_id)
            self._publish(slot, progress)
        return progress

    async def _fetch(self, negotiation_id: int) -> NegotiationProgress:
        negotiation = Negotiation.from_record(await self.ledger.read_negotiation(negotiation_id))
        is_expired = await self.ledger.is_expired(negotiation_id)
        last_error = await self.ledger.get_callback_debug_info(negotiation_id)
        return NegotiationProgress.from_negotiation(negotiation, is_expired, last_error or "")

    def _publish(self, slot: _WatchSlot, progress: NegotiationProgress) -> None:
        if self._slots.get(slot.negotiation_id) is not slot:
            return
        previous = slot.latest.state
        if progress.state is not None and not NegotiationStateMachine.is_forward(previous, progress.state):
            logger.warning(
                "Negotiation %s read state %s after %s; keeping the latest read",
                slot.negotiation_id,
                progress.state.name,
                previous.name,
            )
        slot.latest = progress
        for queue in list(slot.subscribers):
            _offer(queue, progress)

    async def _run_updater(self, slot: _WatchSlot) -> None:
        while True:
            reason = await slot.pending.get()
            # Coalesce requests that piled up while the last fetch ran
            while not slot.pending.empty():
                slot.pending.get_nowait()
            try:
                await self._refresh_slot(slot)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "Refresh of negotiation %s (%s) failed: %s", slot.negotiation_id, reason, exc
                )

    async def _sweep_loop(self) -> None:
        """Re-fetch every watched negotiation on a fixed interval."""
        while True:
            await asyncio.sleep(self.sync_interval)
            await self.refresh_all()

    # ------------------------------------------------------------------
    # Ledger events
    # ------------------------------------------------------------------

    def _on_event(self, event: LedgerEvent) -> None:
        logger.info("[Event] %s negotiation=%s", event.kind.value, event.negotiation_id)
        self.request_refresh(event.negotiation_id, event.kind.value)

    def _ensure_listeners(self) -> None:
        if not self._listening:
            self.ledger.subscribe(self._on_event)
            self._listening = True

    def _teardown_listeners(self) -> None:
        if self._listening:
            self.ledger.remove_all_listeners()
            self._listening = False
