# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/tasks/task.py

from __future__ import annotations

import abc
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from seadeploy.errors import OperationCancelled, PhaseFailedError, PreconditionError
from seadeploy.observers.dispatcher import EventBus
from seadeploy.observers.events import (
    PhaseCompleted,
    PhaseFailed,
    PhaseStarted,
    RollbackResult,
    RollbackStarted,
    TaskAttemptFailed,
    TaskFailed,
    TaskStarted,
    TaskSucceeded,
)
from seadeploy.utils.execution import ExecutionContext

log = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0
DEFAULT_MAX_WORKERS = 16

# failures that retrying cannot fix
NON_RETRYABLE = (PreconditionError, OperationCancelled)


class Task(abc.ABC):
    """
    A unit of work. Everything ``rollback`` needs must be derivable from the
    task's own fields.
    """

    @property
    @abc.abstractmethod
    def id(self) -> str:
        ...

    @property
    @abc.abstractmethod
    def description(self) -> str:
        ...

    @abc.abstractmethod
    def execute(self, ctx: ExecutionContext) -> None:
        ...

    @abc.abstractmethod
    def rollback(self, ctx: ExecutionContext) -> None:
        ...


class BaseTask(Task):
    def __init__(self, task_id: str, name: str, description: str = ""):
        self._id = task_id
        self.name = name
        self._description = description

    @property
    def id(self) -> str:
        return self._id

    @property
    def description(self) -> str:
        return self._description or self.name

    def __str__(self) -> str:
        return self.description

    def rollback(self, ctx: ExecutionContext) -> None:
        pass


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    success: bool
    error: Optional[BaseException]
    start_time: datetime
    end_time: datetime
    attempts: int = 1

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class GroupSummary:
    total: int
    successful: int
    failed: int
    duration: timedelta


class GroupState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class OrchestratorState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


class TaskGroup:
    """
    A named batch of tasks run once, sequentially or on a bounded thread pool.

    Sequential groups stop at the first failure unless ``continue_on_error``.
    Parallel groups always wait for every task and raise the first error
    observed. Results are recorded in completion order; each task gets up to
    ``max_retries + 1`` attempts and only the last one is recorded.
    """

    def __init__(
        self,
        name: str,
        *,
        parallel: bool = False,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        continue_on_error: bool = False,
        max_workers: int = DEFAULT_MAX_WORKERS,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.name = name
        self.parallel = parallel
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.continue_on_error = continue_on_error
        self.max_workers = max_workers
        self.bus = bus
        self.run_ctx = run_ctx
        self.tasks: List[Task] = []
        self.results: List[TaskResult] = []
        self.state = GroupState.PENDING
        self.first_failure: Optional[TaskResult] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        mode = "parallel" if self.parallel else "sequential"
        return f"TaskGroup({self.name!r}, {mode}, tasks={len(self.tasks)}, state={self.state.value})"

    def _emit(self, event_cls, **kw) -> None:
        if self.bus is not None and self.run_ctx is not None:
            self.bus.emit(event_cls(**kw, **self.run_ctx))

    def add_task(self, task: Task) -> "TaskGroup":
        if self.state is not GroupState.PENDING:
            raise RuntimeError(f"task group {self.name!r} already executed")
        self.tasks.append(task)
        return self

    def execute(self, ctx: Optional[ExecutionContext] = None) -> None:
        if self.state is not GroupState.PENDING:
            raise RuntimeError(f"task group {self.name!r} already executed")
        ctx = ctx or ExecutionContext()
        self.state = GroupState.RUNNING
        self._emit(PhaseStarted, phase=self.name, tasks=len(self.tasks), parallel=self.parallel)
        log.info("[%s] running %d task(s) %s", self.name, len(self.tasks),
                 "in parallel" if self.parallel else "sequentially")

        if self.parallel:
            self._run_parallel(ctx)
        else:
            self._run_sequential(ctx)

        summary = self.summary()
        if self.first_failure is not None:
            self.state = GroupState.FAILED
            self._emit(PhaseFailed, phase=self.name, error=str(self.first_failure.error))
            raise self.first_failure.error

        self.state = GroupState.COMPLETED
        self._emit(PhaseCompleted, phase=self.name, successful=summary.successful,
                   failed=summary.failed, duration_ms=_ms(summary.duration))

    def _record(self, result: TaskResult) -> None:
        with self._lock:
            self.results.append(result)
            if not result.success and self.first_failure is None:
                self.first_failure = result

    def _run_sequential(self, ctx: ExecutionContext) -> None:
        for task in self.tasks:
            result = self._execute_with_retry(task, ctx)
            self._record(result)
            if not result.success and not self.continue_on_error:
                return

    def _run_parallel(self, ctx: ExecutionContext) -> None:
        if not self.tasks:
            return
        workers = max(1, min(self.max_workers, len(self.tasks)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.name) as pool:
            futures = [pool.submit(self._execute_with_retry, task, ctx) for task in self.tasks]
            for fut in as_completed(futures):
                self._record(fut.result())

    def _execute_with_retry(self, task: Task, ctx: ExecutionContext) -> TaskResult:
        start = _now()
        self._emit(TaskStarted, task_id=task.id, description=task.description)
        last_error: Optional[BaseException] = None
        attempt = 0
        for attempt in range(1, self.max_retries + 2):
            if attempt > 1:
                log.info("[%s] retrying %s (attempt %d/%d) in %.1fs", self.name, task.id,
                         attempt, self.max_retries + 1, self.retry_delay)
                try:
                    ctx.sleep(self.retry_delay)
                except OperationCancelled as e:
                    last_error = e
                    attempt -= 1
                    break
            try:
                task.execute(ctx)
                last_error = None
                break
            except NON_RETRYABLE as e:
                last_error = e
                log.error("[%s] %s failed and will not be retried: %s", self.name, task.id, e)
                break
            except Exception as e:
                last_error = e
                log.warning("[%s] %s attempt %d failed: %s", self.name, task.id, attempt, e)
                self._emit(TaskAttemptFailed, task_id=task.id, attempt=attempt, error=str(e))

        end = _now()
        result = TaskResult(
            task_id=task.id,
            success=last_error is None,
            error=last_error,
            start_time=start,
            end_time=end,
            attempts=attempt,
        )
        if result.success:
            log.info("[%s] %s succeeded in %.1fs", self.name, task.id, result.duration.total_seconds())
            self._emit(TaskSucceeded, task_id=task.id, attempts=attempt, duration_ms=_ms(result.duration))
        else:
            self._emit(TaskFailed, task_id=task.id, attempts=attempt, error=str(last_error))
        return result

    def rollback(self, ctx: Optional[ExecutionContext] = None) -> None:
        """
        Roll back successful tasks in reverse result order. Stops at and
        raises the first rollback failure.
        """
        ctx = ctx or ExecutionContext()
        by_id: Dict[str, Task] = {t.id: t for t in self.tasks}
        for result in reversed(list(self.results)):
            if not result.success:
                continue
            task = by_id.get(result.task_id)
            if task is None:
                continue
            log.info("[%s] rolling back %s", self.name, task.id)
            self._emit(RollbackStarted, phase=self.name, task_id=task.id)
            try:
                task.rollback(ctx)
            except Exception as e:
                self._emit(RollbackResult, phase=self.name, task_id=task.id, status="FAILED", error=str(e))
                raise
            self._emit(RollbackResult, phase=self.name, task_id=task.id, status="ROLLED_BACK")
        self.state = GroupState.ROLLED_BACK

    def summary(self) -> GroupSummary:
        with self._lock:
            results = list(self.results)
        successful = sum(1 for r in results if r.success)
        duration = sum((r.duration for r in results), timedelta())
        return GroupSummary(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            duration=duration,
        )


class TaskOrchestrator:
    """
    Runs task groups (phases) in order. When a phase fails its successful
    tasks are rolled back and ``PhaseFailedError`` is raised.

    With ``rollback_completed_phases`` the phases that completed before the
    failing one are rolled back too, newest first.
    """

    def __init__(
        self,
        *,
        rollback_completed_phases: bool = False,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.groups: List[TaskGroup] = []
        self.rollback_completed_phases = rollback_completed_phases
        self.bus = bus
        self.run_ctx = run_ctx
        self.state = OrchestratorState.PENDING
        self.current_phase: Optional[int] = None

    def add_group(self, group: TaskGroup) -> "TaskOrchestrator":
        if group.bus is None:
            group.bus, group.run_ctx = self.bus, self.run_ctx
        self.groups.append(group)
        return self

    def execute(self, ctx: Optional[ExecutionContext] = None) -> None:
        ctx = ctx or ExecutionContext()
        self.state = OrchestratorState.RUNNING
        completed: List[TaskGroup] = []

        for i, group in enumerate(self.groups):
            self.current_phase = i
            start = time.monotonic()
            try:
                group.execute(ctx)
            except Exception as e:
                self._fail(group, completed, e, ctx)
            log.info("phase %s done in %.1fs (%s)", group.name, time.monotonic() - start, group.summary())
            completed.append(group)

        self.state = OrchestratorState.COMPLETED

    def _fail(self, group: TaskGroup, completed: List[TaskGroup], error: Exception, ctx: ExecutionContext) -> None:
        self.state = OrchestratorState.ROLLING_BACK
        task_id = group.first_failure.task_id if group.first_failure else None
        log.error("phase %s failed at %s: %s; rolling back", group.name, task_id, error)

        # rollback must still reach hosts after a cancel
        rb_ctx = ExecutionContext(dry_run=ctx.dry_run)
        rollback_error: Optional[BaseException] = None
        try:
            group.rollback(rb_ctx)
        except Exception as e:
            log.error("rollback of phase %s failed: %s", group.name, e)
            rollback_error = e

        if self.rollback_completed_phases:
            for done in reversed(completed):
                try:
                    done.rollback(rb_ctx)
                except Exception as e:
                    log.error("rollback of phase %s failed: %s", done.name, e)
                    if rollback_error is None:
                        rollback_error = e

        self.state = OrchestratorState.FAILED
        raise PhaseFailedError(group.name, task_id, error, rollback_error) from error

    @property
    def results(self) -> List[TaskResult]:
        return [r for g in self.groups for r in g.results]

    def summary(self) -> GroupSummary:
        results = self.results
        successful = sum(1 for r in results if r.success)
        return GroupSummary(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            duration=sum((r.duration for r in results), timedelta()),
        )
