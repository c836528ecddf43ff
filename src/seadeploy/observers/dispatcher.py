# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/observers/dispatcher.py
from __future__ import annotations

import logging
import threading
from typing import List, Optional

from .events import BaseEvent
from .interface import Observer

log = logging.getLogger(__name__)


class EventBus:
    """Fans events out to observers. Safe to emit from worker threads."""

    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers = list(observers or [])
        self._lock = threading.Lock()

    def subscribe(self, observer: Observer) -> None:
        with self._lock:
            self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception:
                    # observers must not break deploys
                    log.warning("observer %s failed on %s", type(ob).__name__,
                                type(event).__name__, exc_info=True)
