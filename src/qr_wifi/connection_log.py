"""Event log recording the progress of Wi-Fi association attempts."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable


@dataclass(slots=True)
class AttemptEvent:
    """Progress notification emitted while joining a network.

    ``event`` is one of ``started``, ``retrying``, ``deferred``,
    ``resuming``, ``succeeded``, ``failed`` or ``cancelled``.
    """

    timestamp: float
    event: str
    message: str
    ssid: str | None = None
    state: str | None = None
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "message": self.message,
            "ssid": self.ssid,
            "state": self.state,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class ConnectionLog:
    """Bounded, thread-safe event log with optional JSONL persistence."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 200,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[AttemptEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logging.getLogger(__name__).warning(
                    "Unable to prepare connection log directory: %s", exc
                )
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        event: str,
        message: str,
        *,
        ssid: str | None = None,
        state: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> AttemptEvent:
        """Append a new event and return the stored entry."""

        entry = AttemptEvent(
            timestamp=time.time(),
            event=event,
            message=message,
            ssid=ssid,
            state=state,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(self, limit: int | None = None, *, event: str | None = None) -> list[AttemptEvent]:
        """Return the most recent entries, oldest first."""

        with self._lock:
            entries: Iterable[AttemptEvent] = list(self._entries)
        if event:
            entries = [entry for entry in entries if entry.event == event]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            if len(entries) > limit_value:
                entries = entries[-limit_value:]
        return entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # ----------------------------- implementation --------------------------
    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        total = 0
        try:
            with self._lock, self._path.open("r", encoding="utf-8") as handle:
                for raw_line in handle:
                    line = raw_line.strip()
                    if not line:
                        continue
                    total += 1
                    try:
                        payload = json.loads(line)
                    except ValueError:
                        continue
                    entry = self._deserialize(payload)
                    if entry is not None:
                        self._entries.append(entry)
        except OSError as exc:  # pragma: no cover - best effort logging
            logging.getLogger(__name__).warning("Unable to load connection log: %s", exc)
            return
        if total > len(self._entries):
            self._compact()

    def _compact(self) -> None:
        """Rewrite the file so it holds only the entries kept in memory."""

        if self._path is None:
            return
        with self._lock:
            lines = [self._serialize(entry) for entry in self._entries]
        staging = self._path.with_name(self._path.name + ".tmp")
        try:
            staging.write_text("".join(lines), encoding="utf-8")
            staging.replace(self._path)
        except OSError as exc:  # pragma: no cover - best effort logging
            logging.getLogger(__name__).warning("Unable to compact connection log: %s", exc)

    @staticmethod
    def _serialize(entry: AttemptEvent) -> str:
        return json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n"

    @staticmethod
    def _deserialize(payload: object) -> AttemptEvent | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(payload.get("timestamp"))
        except (TypeError, ValueError):
            timestamp = time.time()
        ssid = payload.get("ssid")
        state = payload.get("state")
        metadata = payload.get("metadata")
        return AttemptEvent(
            timestamp=timestamp,
            event=event,
            message=message,
            ssid=ssid if isinstance(ssid, str) else None,
            state=state if isinstance(state, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )

    def _append_persistent(self, entry: AttemptEvent) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(self._serialize(entry))
        except OSError as exc:  # pragma: no cover - best effort logging
            logging.getLogger(__name__).warning("Unable to persist connection log: %s", exc)

    @staticmethod
    def _clean_metadata(
        metadata: dict[str, object | None] | None,
    ) -> dict[str, object | None] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["AttemptEvent", "ConnectionLog"]
