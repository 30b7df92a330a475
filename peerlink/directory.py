"""
Directory of connected peers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

LOG = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Peer:
    """A connection that completed the ``join`` handshake."""

    id: str
    name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


Snapshot = Tuple[Peer, ...]
DirectoryObserver = Callable[[Snapshot], None]


class Directory:
    """
    In-memory map of connection id to display name.

    Every mutation produces one snapshot which is handed to all observers, so
    every recipient of a single broadcast sees the same list.  Re-registering
    an id keeps its position and replaces the name.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._peers: Dict[str, Peer] = {}
        self._observer_counter = 0
        self._observers: Dict[int, DirectoryObserver] = {}

    # ------------------------------------------------------------------ helpers

    def _snapshot_locked(self) -> Snapshot:
        return tuple(self._peers.values())

    def _notify(self, snapshot: Snapshot) -> None:
        with self._lock:
            observers = dict(self._observers)
        for token, callback in observers.items():
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the directory
                LOG.exception("Directory observer %s failed.", token)

    # ------------------------------------------------------------------ public API

    def subscribe(self, callback: DirectoryObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        with self._lock:
            self._observer_counter += 1
            token = self._observer_counter
            self._observers[token] = callback
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._observers.pop(token, None)

    def register(self, connection_id: str, name: str) -> None:
        with self._lock:
            previous = self._peers.get(connection_id)
            self._peers[connection_id] = Peer(id=connection_id, name=name)
            snapshot = self._snapshot_locked()
        if previous is None:
            LOG.info("Peer %s joined as %r (%d online)", connection_id, name, len(snapshot))
        else:
            LOG.info("Peer %s renamed %r -> %r", connection_id, previous.name, name)
        self._notify(snapshot)

    def remove(self, connection_id: str) -> None:
        with self._lock:
            removed = self._peers.pop(connection_id, None)
            if removed is None:
                return
            snapshot = self._snapshot_locked()
        LOG.info("Peer %s (%r) left (%d online)", connection_id, removed.name, len(snapshot))
        self._notify(snapshot)

    def snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot_locked()

    def get(self, connection_id: str) -> Optional[Peer]:
        with self._lock:
            return self._peers.get(connection_id)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)


def snapshot_to_list(snapshot: Snapshot) -> list:
    return [peer.to_dict() for peer in snapshot]


__all__ = ["Directory", "DirectoryObserver", "Peer", "Snapshot", "snapshot_to_list"]
