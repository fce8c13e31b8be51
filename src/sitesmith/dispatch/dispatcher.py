"""Concurrent generation dispatch with admission control, retry and substitution."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

from sitesmith.config import DispatchSettings, GatewaySettings
from sitesmith.dispatch.errors import GatewayError, MalformedOutputError
from sitesmith.dispatch.gateway.base import GatewayOptions, InferenceGateway
from sitesmith.dispatch.models import (
    AttemptEvent,
    AttemptStatus,
    BatchResult,
    FailureKind,
    GenerationTask,
    RepairResult,
    Role,
    TaskFailure,
    TaskOutcome,
    TaskStatus,
)
from sitesmith.dispatch.repair import repair_response
from sitesmith.dispatch.retry_policy import RetryAction, decide_retry
from sitesmith.dispatch.sanitization import sanitize_preview
from sitesmith.dispatch.trust import TrustLedger

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.05
_WORKERS_PER_SLOT = 4

OutcomeCallback = Callable[[TaskOutcome], None]


class BackendResolver(Protocol):
    def resolve(self, role: Role) -> list[str]:
        """Ordered eligible backend ids for ``role``."""


class AttemptSink(Protocol):
    def record(self, event: AttemptEvent) -> None:
        """Persist one attempt event."""


@dataclass(slots=True)
class _AttemptResult:
    repaired: RepairResult | None = None
    raw: str | None = None
    kind: FailureKind | None = None
    message: str = ""
    retry_after: float | None = None
    abandoned: bool = False


class Dispatcher:
    """Runs generation tasks against role-resolved backends.

    At most ``concurrency_limit`` gateway calls are in flight at once. Rate
    limit backoff happens outside the admission gate so a waiting task does
    not hold a slot. Trust is updated only for attempts that completed.
    """

    def __init__(
        self,
        *,
        gateway: InferenceGateway,
        resolver: BackendResolver,
        ledger: TrustLedger,
        settings: DispatchSettings,
        gateway_settings: GatewaySettings | None = None,
        journal: AttemptSink | None = None,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._ledger = ledger
        self._settings = settings
        self._gateway_settings = gateway_settings or GatewaySettings()
        self._journal = journal

    def run_one(
        self,
        task: GenerationTask,
        *,
        cancel_event: threading.Event | None = None,
    ) -> TaskOutcome:
        """Run a single task with the configured attempt budget."""

        result = self.run_concurrent([task], concurrency_limit=1, cancel_event=cancel_event)
        return result.outcomes[task.task_id]

    def run_concurrent(
        self,
        tasks: Sequence[GenerationTask],
        concurrency_limit: int | None = None,
        max_attempts_per_task: int | None = None,
        cancel_event: threading.Event | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> BatchResult:
        """Run ``tasks`` concurrently and return outcomes keyed by task id.

        Tasks that have not completed when ``cancel_event`` is set are
        reported as not attempted.
        """

        limit = (
            self._settings.concurrency_limit if concurrency_limit is None else concurrency_limit
        )
        max_attempts = (
            self._settings.max_attempts_per_task
            if max_attempts_per_task is None
            else max_attempts_per_task
        )
        if limit <= 0:
            raise ValueError("concurrency_limit must be > 0")
        if max_attempts <= 0:
            raise ValueError("max_attempts_per_task must be > 0")
        task_ids = [task.task_id for task in tasks]
        if len(set(task_ids)) != len(task_ids):
            raise ValueError("Task ids must be unique within a batch.")

        cancel = cancel_event or threading.Event()
        gate = threading.BoundedSemaphore(limit)
        result = BatchResult()
        if not tasks:
            return result

        initial = self._initial_backends(tasks)
        outcomes_lock = threading.Lock()

        def _worker(task: GenerationTask) -> None:
            try:
                outcome = self._run_task(
                    task,
                    backend_id=initial.get(task.task_id),
                    gate=gate,
                    cancel=cancel,
                    max_attempts=max_attempts,
                )
            except Exception as error:  # noqa: BLE001
                logger.exception("Task %s crashed in dispatch", task.task_id)
                outcome = _failed(
                    task,
                    attempts=0,
                    attempted=[],
                    last_kind=None,
                    message=f"Unexpected dispatch error: {type(error).__name__}: {error}",
                )
            if outcome is None:
                return
            with outcomes_lock:
                result.outcomes[task.task_id] = outcome
            if on_outcome is None:
                return
            try:
                on_outcome(outcome)
            except Exception:  # noqa: BLE001
                logger.exception("Outcome callback failed for task %s", task.task_id)

        workers = max(1, min(len(tasks), limit * _WORKERS_PER_SLOT))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
            futures = [pool.submit(_worker, task) for task in tasks]
            for future in futures:
                future.result()

        result.cancelled = cancel.is_set()
        for task in tasks:
            if task.task_id not in result.outcomes:
                result.outcomes[task.task_id] = TaskOutcome(
                    task_id=task.task_id,
                    status=TaskStatus.NOT_ATTEMPTED,
                )
        logger.info(
            "Batch finished: %s (%d not attempted)",
            result.summary(),
            len(result.not_attempted),
        )
        return result

    def _initial_backends(self, tasks: Sequence[GenerationTask]) -> dict[str, str]:
        assigned: dict[str, str] = {}
        bulk_candidates: list[str] | None = None
        bulk_index = 0
        for task in tasks:
            if task.backend_id is not None:
                assigned[task.task_id] = task.backend_id
                continue
            if task.role is not Role.BULK:
                continue
            if bulk_candidates is None:
                bulk_candidates = self._resolver.resolve(Role.BULK)
            usable = [item for item in bulk_candidates if item not in task.exclude_backends]
            if usable:
                assigned[task.task_id] = usable[bulk_index % len(usable)]
                bulk_index += 1
        return assigned

    def _candidates(self, task: GenerationTask) -> list[str]:
        return [
            backend_id
            for backend_id in self._resolver.resolve(task.role)
            if backend_id not in task.exclude_backends
        ]

    def _run_task(  # noqa: C901, PLR0911
        self,
        task: GenerationTask,
        *,
        backend_id: str | None,
        gate: threading.BoundedSemaphore,
        cancel: threading.Event,
        max_attempts: int,
    ) -> TaskOutcome | None:
        backend = backend_id
        if backend is None:
            candidates = self._candidates(task)
            if not candidates:
                return _failed(
                    task,
                    attempts=0,
                    attempted=[],
                    last_kind=None,
                    message=f"No eligible backend for role {task.role.value}.",
                )
            backend = candidates[0]

        attempted: list[str] = []
        attempts = 0
        streak = 0
        last_kind: FailureKind | None = None
        last_message = ""

        while True:
            if cancel.is_set():
                return None
            if not _acquire(gate, cancel):
                return None
            try:
                if cancel.is_set():
                    return None
                attempts += 1
                attempted.append(backend)
                started = time.monotonic()
                attempt = self._attempt(task, backend, cancel)
                duration_ms = int((time.monotonic() - started) * 1000)
            finally:
                gate.release()

            attempt_no = task.attempt + attempts
            if attempt.abandoned:
                self._journal_event(
                    task, attempt, attempt_no=attempt_no, backend=backend,
                    status=AttemptStatus.ABANDONED, kind=None, duration_ms=duration_ms,
                )
                return None

            if attempt.kind is None and attempt.repaired is not None:
                self._update_trust(backend, succeeded=True)
                self._journal_event(
                    task, attempt, attempt_no=attempt_no, backend=backend,
                    status=AttemptStatus.SUCCEEDED, kind=None, duration_ms=duration_ms,
                )
                return TaskOutcome(
                    task_id=task.task_id,
                    status=TaskStatus.SUCCEEDED,
                    backend_id=backend,
                    attempts=attempts,
                    raw_output=attempt.raw,
                    repaired=attempt.repaired,
                )

            kind = attempt.kind or FailureKind.TRANSPORT
            self._update_trust(backend, succeeded=False)
            self._journal_event(
                task, attempt, attempt_no=attempt_no, backend=backend,
                status=AttemptStatus.FAILED, kind=kind, duration_ms=duration_ms,
            )
            last_kind = kind
            last_message = attempt.message
            streak = streak + 1 if kind is FailureKind.RATE_LIMITED else 0

            decision = decide_retry(
                attempts_used=attempts,
                max_attempts=max_attempts,
                failure_kind=kind,
                current_backend=backend,
                candidates=self._candidates(task),
                attempted=attempted,
                rate_limit_streak=streak,
                rate_limit_switch_after=self._settings.rate_limit_switch_after,
                backoff_base_seconds=self._settings.backoff_base_seconds,
                backoff_max_seconds=self._settings.backoff_max_seconds,
            )
            if decision.action is RetryAction.FAIL:
                logger.warning(
                    "Task %s failed after %d attempt(s) on %s: %s",
                    task.task_id,
                    attempts,
                    attempted,
                    decision.reason,
                )
                return _failed(
                    task,
                    attempts=attempts,
                    attempted=attempted,
                    last_kind=last_kind,
                    message=f"{decision.reason} Last error: {last_message}",
                )

            if decision.action is RetryAction.RETRY_SAME:
                delay = decision.backoff_seconds
                if attempt.retry_after is not None:
                    delay = min(self._settings.backoff_max_seconds, max(delay, attempt.retry_after))
                logger.info(
                    "Task %s rate limited on %s, waiting %.2fs",
                    task.task_id,
                    backend,
                    delay,
                )
                if delay > 0 and cancel.wait(delay):
                    return None
                continue

            logger.warning("Task %s: %s", task.task_id, decision.reason)
            backend = decision.backend_id or backend
            streak = 0

    def _attempt(
        self,
        task: GenerationTask,
        backend: str,
        cancel: threading.Event,
    ) -> _AttemptResult:
        options = GatewayOptions(
            timeout_seconds=self._settings.attempt_timeout_seconds,
            max_output_tokens=self._gateway_settings.max_output_tokens,
            temperature=self._gateway_settings.temperature,
        )
        box = _AttemptResult()
        done = threading.Event()

        def _call() -> None:
            try:
                raw = self._gateway.send(backend, task.payload, options)
            except GatewayError as exc:
                box.kind = exc.kind
                box.message = str(exc)
                box.retry_after = exc.retry_after
            except Exception as exc:
                logger.exception("Unexpected gateway failure on %s", backend)
                box.kind = FailureKind.TRANSPORT
                box.message = f"{type(exc).__name__}: {exc}"
            else:
                box.raw = raw
                if not raw.strip():
                    box.kind = FailureKind.EMPTY_RESPONSE
                    box.message = f"Empty response from {backend}"
                else:
                    try:
                        box.repaired = repair_response(raw)
                    except MalformedOutputError as exc:
                        box.kind = FailureKind.MALFORMED_OUTPUT
                        box.message = f"{exc}: {exc.preview}"
            finally:
                done.set()

        caller = threading.Thread(target=_call, name=f"gateway-{task.task_id}", daemon=True)
        caller.start()
        deadline = time.monotonic() + self._settings.attempt_timeout_seconds
        while not done.wait(_POLL_SECONDS):
            if cancel.is_set():
                logger.info("Abandoning in-flight call of %s on %s", task.task_id, backend)
                return _AttemptResult(abandoned=True, message="cancelled")
            if time.monotonic() >= deadline:
                return _AttemptResult(
                    kind=FailureKind.TIMEOUT,
                    message=(
                        f"Attempt on {backend} exceeded "
                        f"{self._settings.attempt_timeout_seconds:.1f}s"
                    ),
                )
        return box

    def _journal_event(  # noqa: PLR0913
        self,
        task: GenerationTask,
        attempt: _AttemptResult,
        *,
        attempt_no: int,
        backend: str,
        status: AttemptStatus,
        kind: FailureKind | None,
        duration_ms: int,
    ) -> None:
        if self._journal is None:
            return
        event = AttemptEvent(
            task_id=task.task_id,
            attempt_no=attempt_no,
            role=task.role,
            backend_id=backend,
            status=status,
            failure_kind=kind,
            duration_ms=duration_ms,
            output_chars=len(attempt.raw or ""),
            error_summary=sanitize_preview(attempt.message) or None,
        )
        try:
            self._journal.record(event)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Attempt journal write failed for %s attempt %d: %s",
                task.task_id,
                attempt_no,
                error,
            )

    def _update_trust(self, backend: str, *, succeeded: bool) -> None:
        try:
            if succeeded:
                self._ledger.record_success(backend)
            else:
                self._ledger.record_failure(backend)
        except OSError as error:
            logger.warning("Trust ledger write failed for %s: %s", backend, error)


def _acquire(gate: threading.BoundedSemaphore, cancel: threading.Event) -> bool:
    while not gate.acquire(timeout=_POLL_SECONDS):
        if cancel.is_set():
            return False
    return True


def _failed(
    task: GenerationTask,
    *,
    attempts: int,
    attempted: list[str],
    last_kind: FailureKind | None,
    message: str,
) -> TaskOutcome:
    return TaskOutcome(
        task_id=task.task_id,
        status=TaskStatus.FAILED,
        backend_id=attempted[-1] if attempted else None,
        attempts=attempts,
        failure=TaskFailure(
            kind=FailureKind.EXHAUSTED,
            last_kind=last_kind,
            attempted_backends=tuple(attempted),
            message=message,
        ),
    )
