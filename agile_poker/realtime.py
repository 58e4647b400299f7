"""
Flux de notifications de changement.

Chaque écriture validée par le DataClient publie un ChangeEvent ; les
abonnés filtrent par table et, optionnellement, par (colonne, valeur).
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from .models import ChangeEvent

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(self, hub: "Realtime", table: str, callback: Callback,
                 row_filter: Optional[Tuple[str, str]] = None):
        self.hub = hub
        self.table = table
        self.callback = callback
        self.row_filter = row_filter
        self.active = True

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.row_filter is None:
            return True
        column, value = self.row_filter
        # un DELETE ne porte que l'ancienne ligne
        row = change.record or change.old_record or {}
        return row.get(column) == value

    def unsubscribe(self) -> None:
        self.hub._remove(self)


class Realtime:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, table: str, callback: Callback,
                  row_filter: Optional[Tuple[str, str]] = None) -> Subscription:
        sub = Subscription(self, table, callback, row_filter)
        with self._lock:
            self._subscriptions.setdefault(table, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.table, [])
            if sub in subs:
                subs.remove(sub)
            sub.active = False

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions.get(change.table, []) if s.matches(change)]
        for sub in targets:
            try:
                sub.callback(change)
            except Exception:
                logger.exception("Change listener failed for %s %s", change.table, change.event)
