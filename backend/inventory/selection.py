"""
Active container selection.

A small observable store holding the container id the operator is looking at.
The id is opaque; it is stored and compared, never parsed. Subscribers are
notified synchronously, and only when the value actually changes.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import structlog

logger = structlog.get_logger()

Listener = Callable[[str | None], None]


class ActiveContainerStore:
    def __init__(self, initial: str | None = None, *, persist_path: str | Path | None = None):
        self._persist_path = Path(persist_path) if persist_path else None
        self._listeners: list[Listener] = []
        self._active = initial if initial is not None else self._load()

    @property
    def active_container_id(self) -> str | None:
        return self._active

    def set_active(self, container_id: str) -> None:
        if not container_id:
            raise ValueError("container_id must be a non-empty string")
        self._update(container_id)

    def clear(self) -> None:
        self._update(None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, value: str | None) -> None:
        if value == self._active:
            return
        self._active = value
        self._save()
        for listener in list(self._listeners):
            listener(value)

    # ── Persistence ───────────────────────────────────────────────────────

    def _load(self) -> str | None:
        if self._persist_path is None or not self._persist_path.exists():
            return None
        try:
            payload = json.loads(self._persist_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("selection.load_failed", path=str(self._persist_path), error=str(exc))
            return None
        value = payload.get("active_container_id") if isinstance(payload, dict) else None
        return value if isinstance(value, str) and value else None

    def _save(self) -> None:
        if self._persist_path is None:
            return
        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps({"active_container_id": self._active}), encoding="utf-8")
