from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Callable


class LoggerService:
    MAX_ROWS = 2000

    def __init__(self, *, echo: bool = True) -> None:
        self.echo = echo
        self.rows: deque[dict[str, object]] = deque(maxlen=self.MAX_ROWS)
        self._listeners: list[Callable[[dict[str, object]], None]] = []

    def subscribe(self, listener: Callable[[dict[str, object]], None]) -> None:
        self._listeners.append(listener)

    def log(self, event: str, **data: object) -> None:
        row = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "data": data,
        }
        self.rows.append(row)
        if self.echo:
            print(f"[{row['ts']}] {event} {data}")
        for listener in self._listeners:
            try:
                listener(row)
            except Exception:  # noqa: BLE001
                continue

    def events(self, prefix: str = "") -> list[str]:
        return [str(row["event"]) for row in self.rows if str(row["event"]).startswith(prefix)]
