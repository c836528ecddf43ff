# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from seadeploy.errors import OperationCancelled


@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how commands are executed and carries the run's cancellation token
    """

    dry_run: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False)

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled("operation cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep that wakes up early and raises on cancellation."""
        if self.cancel_event.wait(seconds):
            raise OperationCancelled("operation cancelled")
