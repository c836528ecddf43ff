# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/observers/console.py
from .events import BaseEvent

_CTX_KEYS = ("ts", "run_id", "cluster", "operation")


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        print(f"[{d['ts']}] {k} cluster={d['cluster']} op={d['operation']} data={{"
              + ", ".join(f"{x}={y}" for x, y in d.items() if x not in _CTX_KEYS) + "}")
