"""
In-process registry of calls awaiting completion.

Webhook handlers resolve a pending future keyed by provider call id; the
executor waiting on that call wakes up without waiting for its next poll.
Events that arrive before anyone waits are kept briefly so a fast call is
not missed.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict

from pharmacall.voice.interface import CallStatusSnapshot
from pharmacall.voice.outcome import ExtractedData

MAX_EARLY_EVENTS = 1024


class CallCompletionRegistry:
    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[CallStatusSnapshot]] = {}
        self._early: OrderedDict[str, CallStatusSnapshot] = OrderedDict()
        self._extractions: OrderedDict[str, ExtractedData] = OrderedDict()

    def expect(self, provider_call_id: str) -> asyncio.Future[CallStatusSnapshot]:
        future = self._pending.get(provider_call_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[provider_call_id] = future
        early = self._early.pop(provider_call_id, None)
        if early is not None and not future.done():
            future.set_result(early)
        return future

    def resolve(self, provider_call_id: str, snapshot: CallStatusSnapshot) -> bool:
        """Deliver a terminal snapshot.

        Returns:
            True if a waiter was woken.
        """
        future = self._pending.get(provider_call_id)
        if future is None:
            self._early[provider_call_id] = snapshot
            while len(self._early) > MAX_EARLY_EVENTS:
                self._early.popitem(last=False)
            return False
        if future.done():
            return False
        future.set_result(snapshot)
        return True

    def discard(self, provider_call_id: str) -> None:
        future = self._pending.pop(provider_call_id, None)
        if future is not None and not future.done():
            future.cancel()
        self._early.pop(provider_call_id, None)

    def pending_count(self) -> int:
        return len(self._pending)

    def report_extraction(self, provider_call_id: str, data: ExtractedData) -> None:
        """Keep structured data the assistant reported mid-call."""
        self._extractions[provider_call_id] = data
        while len(self._extractions) > MAX_EARLY_EVENTS:
            self._extractions.popitem(last=False)

    def take_extraction(self, provider_call_id: str) -> ExtractedData | None:
        return self._extractions.pop(provider_call_id, None)
