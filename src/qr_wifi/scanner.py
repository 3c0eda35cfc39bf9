"""Bridge between a frame source delivering decoded text and the parser."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable

from .credentials import Credential, parse_wifi_payload

CredentialHandler = Callable[[Credential], "Awaitable[None] | None"]

_EXHAUSTED = object()


@dataclass(slots=True)
class ScanStats:
    """Counters describing what the frame source has delivered so far."""

    cycles: int = 0
    decoded: int = 0
    accepted: int = 0
    rejected: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "cycles": self.cycles,
            "decoded": self.decoded,
            "accepted": self.accepted,
            "rejected": self.rejected,
        }


class PayloadScanner:
    """Parse each non-empty delivery from a frame source exactly once.

    A frame source yields ``str | None`` per scan cycle: ``None`` when no
    code was decoded in that cycle. Deliveries that parse into a
    :class:`Credential` are returned (and forwarded to ``handler`` by
    :meth:`watch`); the rest are counted as rejected.
    """

    def __init__(self, *, stop_on_first: bool = True) -> None:
        self._stop_on_first = stop_on_first
        self._stats = ScanStats()
        self._last_payload: str | None = None

    @property
    def stats(self) -> ScanStats:
        return self._stats

    @property
    def last_payload(self) -> str | None:
        return self._last_payload

    def feed(self, delivery: str | None) -> Credential | None:
        self._stats.cycles += 1
        if delivery is None:
            return None
        self._stats.decoded += 1
        self._last_payload = delivery
        credential = parse_wifi_payload(delivery)
        if credential is None:
            self._stats.rejected += 1
            logging.getLogger(__name__).debug("Ignoring non Wi-Fi payload")
            return None
        self._stats.accepted += 1
        return credential

    async def watch(
        self,
        source: Iterable[str | None] | AsyncIterable[str | None],
        handler: CredentialHandler | None = None,
    ) -> list[Credential]:
        """Consume ``source`` and return the credentials it produced."""

        found: list[Credential] = []
        async for delivery in _iterate(source):
            credential = self.feed(delivery)
            if credential is None:
                continue
            found.append(credential)
            if handler is not None:
                result = handler(credential)
                if asyncio.iscoroutine(result):
                    await result
            if self._stop_on_first:
                break
        return found


async def _iterate(
    source: Iterable[str | None] | AsyncIterable[str | None],
) -> AsyncIterator[str | None]:
    if hasattr(source, "__aiter__"):
        async for item in source:  # type: ignore[union-attr]
            yield item
        return
    # Blocking sources such as stdin are pulled on a worker thread.
    iterator = iter(source)  # type: ignore[arg-type]
    while True:
        item = await asyncio.to_thread(next, iterator, _EXHAUSTED)
        if item is _EXHAUSTED:
            return
        yield item  # type: ignore[misc]


__all__ = ["CredentialHandler", "PayloadScanner", "ScanStats"]
