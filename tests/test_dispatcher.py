from __future__ import annotations

import math
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Any

import allure
import pytest
from conftest import RecordingSink, StaticResolver, valid_answer

from sitesmith.config import DispatchSettings
from sitesmith.dispatch.dispatcher import Dispatcher
from sitesmith.dispatch.errors import GatewayError
from sitesmith.dispatch.gateway import GatewayOptions, ScriptedGateway
from sitesmith.dispatch.models import (
    AttemptStatus,
    FailureKind,
    GenerationTask,
    Role,
    TaskOutcome,
    TaskStatus,
)
from sitesmith.dispatch.trust import TrustLedger

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Concurrent Dispatcher"),
]


def _task(task_id: str, role: Role = Role.AUTHORITATIVE, **kwargs: Any) -> GenerationTask:
    return GenerationTask(task_id=task_id, role=role, payload={"task": {"id": task_id}}, **kwargs)


def _rate_limited() -> GatewayError:
    return GatewayError(message="HTTP 429 from a", kind=FailureKind.RATE_LIMITED, status_code=429)


class _SlowGateway:
    """Tracks how many calls overlap; each call sleeps ``delay`` seconds."""

    def __init__(self, delay: float, slow_backends: set[str] | None = None) -> None:
        self.delay = delay
        self.slow_backends = slow_backends
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def send(self, backend_id: str, payload: dict[str, Any], options: GatewayOptions) -> str:
        with self._lock:
            self.calls.append(backend_id)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.slow_backends is None or backend_id in self.slow_backends:
                time.sleep(self.delay)
            return valid_answer()
        finally:
            with self._lock:
                self.in_flight -= 1


def test_rate_limited_twice_then_substitute_succeeds(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    gateway = ScriptedGateway(
        scripts={"a": [_rate_limited(), _rate_limited()]},
        responder=lambda backend_id, payload: valid_answer(),
    )
    sink = RecordingSink()
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.AUTHORITATIVE: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
        journal=sink,
    )

    outcome = dispatcher.run_one(_task("foundation"))

    assert outcome.status is TaskStatus.SUCCEEDED
    assert outcome.backend_id == "b"
    assert outcome.attempts == 3
    assert outcome.repaired is not None
    assert [backend for backend, _ in gateway.calls] == ["a", "a", "b"]
    assert [event.status for event in sink.events] == [
        AttemptStatus.FAILED,
        AttemptStatus.FAILED,
        AttemptStatus.SUCCEEDED,
    ]
    assert [event.attempt_no for event in sink.events] == [1, 2, 3]
    assert sink.events[0].failure_kind is FailureKind.RATE_LIMITED
    assert ledger.get("a").failure_count == 2  # type: ignore[union-attr]
    assert ledger.is_trusted("b") is True


def test_malformed_output_substitutes_backend(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    gateway = ScriptedGateway(
        scripts={"a": ["I am sorry, I cannot produce JSON today."]},
        responder=lambda backend_id, payload: valid_answer(),
    )
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.AUTHORITATIVE: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )

    outcome = dispatcher.run_one(_task("t1"))

    assert outcome.status is TaskStatus.SUCCEEDED
    assert outcome.backend_id == "b"
    assert ledger.get("a").failure_count == 1  # type: ignore[union-attr]


def test_budget_exhaustion_reports_attempted_backends(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    failure = GatewayError(message="connection reset", kind=FailureKind.TRANSPORT)
    gateway = ScriptedGateway(scripts={"a": [failure] * 3, "b": [failure] * 3})
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.AUTHORITATIVE: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )

    outcome = dispatcher.run_one(_task("t1"))

    assert outcome.status is TaskStatus.FAILED
    assert outcome.attempts == 3
    assert outcome.failure is not None
    assert outcome.failure.kind is FailureKind.EXHAUSTED
    assert outcome.failure.last_kind is FailureKind.TRANSPORT
    assert outcome.failure.attempted_backends == ("a", "b", "a")
    assert "connection reset" in outcome.failure.message


def test_no_candidates_fails_without_attempts(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    dispatcher = Dispatcher(
        gateway=ScriptedGateway(),
        resolver=StaticResolver({}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )

    outcome = dispatcher.run_one(_task("t1"))

    assert outcome.status is TaskStatus.FAILED
    assert outcome.attempts == 0
    assert "No eligible backend" in outcome.failure.message  # type: ignore[union-attr]


def test_excluded_backends_are_skipped(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    gateway = ScriptedGateway(responder=lambda backend_id, payload: valid_answer())
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.ESCALATION: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )

    outcome = dispatcher.run_one(_task("t1", Role.ESCALATION, exclude_backends=("a",)))

    assert outcome.backend_id == "b"
    assert gateway.calls_for("a") == 0


def test_in_flight_calls_never_exceed_limit(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    delay = 0.2
    gateway = _SlowGateway(delay=delay)
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.BULK: ["a", "b", "c"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )
    tasks = [_task(f"page-{index}", Role.BULK) for index in range(10)]

    started = time.monotonic()
    result = dispatcher.run_concurrent(tasks, concurrency_limit=3)
    elapsed = time.monotonic() - started

    assert len(result.succeeded) == 10
    assert gateway.max_in_flight <= 3
    waves = math.ceil(10 / 3)
    assert (waves - 1) * delay <= elapsed <= (waves + 1) * delay
    assert result.summary() == "10 of 10 tasks succeeded"


def test_bulk_tasks_are_spread_round_robin(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    gateway = ScriptedGateway(responder=lambda backend_id, payload: valid_answer())
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.BULK: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )

    result = dispatcher.run_concurrent([_task(f"p{index}", Role.BULK) for index in range(4)])

    assert {outcome.backend_id for outcome in result.outcomes.values()} == {"a", "b"}
    assert gateway.calls_for("a") == 2
    assert gateway.calls_for("b") == 2


def test_attempt_timeout_moves_to_next_backend(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    fast_dispatch_settings.attempt_timeout_seconds = 0.2
    gateway = _SlowGateway(delay=2.0, slow_backends={"a"})
    sink = RecordingSink()
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.AUTHORITATIVE: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
        journal=sink,
    )

    outcome = dispatcher.run_one(_task("t1"))

    assert outcome.status is TaskStatus.SUCCEEDED
    assert outcome.backend_id == "b"
    assert sink.events[0].failure_kind is FailureKind.TIMEOUT
    assert ledger.is_trusted("a") is False


def test_cancellation_marks_remaining_tasks_not_attempted(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    cancel = threading.Event()
    gateway = _SlowGateway(delay=0.3)
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.BULK: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )
    seen: list[TaskOutcome] = []

    def on_outcome(outcome: TaskOutcome) -> None:
        seen.append(outcome)
        cancel.set()

    tasks = [_task(f"p{index}", Role.BULK) for index in range(6)]
    result = dispatcher.run_concurrent(
        tasks,
        concurrency_limit=1,
        cancel_event=cancel,
        on_outcome=on_outcome,
    )

    assert result.cancelled is True
    assert len(seen) == 1
    assert len(result.outcomes) == 6
    assert len(result.succeeded) == 1
    assert len(result.not_attempted) == 5


def test_invalid_batch_arguments_raise(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    dispatcher = Dispatcher(
        gateway=ScriptedGateway(),
        resolver=StaticResolver({}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )

    with pytest.raises(ValueError, match="unique"):
        dispatcher.run_concurrent([_task("dup"), _task("dup")])
    with pytest.raises(ValueError, match="concurrency_limit"):
        dispatcher.run_concurrent([_task("a")], concurrency_limit=0)
    assert dispatcher.run_concurrent([]).outcomes == {}


def test_batch_attribution_when_first_backend_is_rate_limited(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    calls_on_a: Counter[str] = Counter()
    lock = threading.Lock()

    def responder(backend_id: str, payload: dict[str, Any]) -> str:
        if backend_id == "a":
            with lock:
                calls_on_a[payload["task"]["id"]] += 1
            raise _rate_limited()
        return valid_answer()

    sink = RecordingSink()
    dispatcher = Dispatcher(
        gateway=ScriptedGateway(responder=responder),
        resolver=StaticResolver({Role.AUTHORITATIVE: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
        journal=sink,
    )
    tasks = [_task(f"section-{index}") for index in range(10)]

    result = dispatcher.run_concurrent(tasks, concurrency_limit=3)

    assert len(result.succeeded) == 10
    for outcome in result.outcomes.values():
        assert outcome.backend_id == "b"
        assert outcome.attempts == 3
    assert set(calls_on_a.values()) == {2}
    by_task: dict[str, list[tuple[int, str]]] = {}
    for event in sink.events:
        by_task.setdefault(event.task_id, []).append((event.attempt_no, event.backend_id))
    assert all(sorted(rows) == [(1, "a"), (2, "a"), (3, "b")] for rows in by_task.values())
    assert ledger.is_trusted("b") is True


def test_truncated_output_substitutes_backend(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    truncated = valid_answer("about.html")[:-60]
    gateway = ScriptedGateway(
        scripts={"a": [truncated]},
        responder=lambda backend_id, payload: valid_answer("about.html"),
    )
    sink = RecordingSink()
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.AUTHORITATIVE: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
        journal=sink,
    )

    outcome = dispatcher.run_one(_task("page:about.html"))

    assert outcome.status is TaskStatus.SUCCEEDED
    assert outcome.backend_id == "b"
    assert sink.events[0].failure_kind is FailureKind.MALFORMED_OUTPUT
    assert ledger.get("a").success_count == 0  # type: ignore[union-attr]
    assert ledger.get("a").failure_count == 1  # type: ignore[union-attr]


class _BrokenSink:
    def __init__(self) -> None:
        self.calls = 0

    def record(self, event: Any) -> None:
        self.calls += 1
        raise OSError("disk full")


class _ReadOnlyLedger(TrustLedger):
    def _persist(self) -> None:
        raise OSError("read-only file system")


def test_journal_write_errors_do_not_abort_batch(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    sink = _BrokenSink()
    dispatcher = Dispatcher(
        gateway=ScriptedGateway(responder=lambda backend_id, payload: valid_answer()),
        resolver=StaticResolver({Role.BULK: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
        journal=sink,
    )

    result = dispatcher.run_concurrent([_task(f"p{index}", Role.BULK) for index in range(3)])

    assert len(result.succeeded) == 3
    assert sink.calls == 3


def test_ledger_write_errors_keep_counts_in_memory(
    tmp_path: Path,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    ledger = _ReadOnlyLedger(tmp_path / "trust.json")
    gateway = ScriptedGateway(
        scripts={"a": ["not json at all"]},
        responder=lambda backend_id, payload: valid_answer(),
    )
    dispatcher = Dispatcher(
        gateway=gateway,
        resolver=StaticResolver({Role.AUTHORITATIVE: ["a", "b"]}),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )

    outcome = dispatcher.run_one(_task("t1"))

    assert outcome.status is TaskStatus.SUCCEEDED
    assert ledger.get("a").failure_count == 1  # type: ignore[union-attr]
    assert ledger.get("b").success_count == 1  # type: ignore[union-attr]


def test_callback_and_task_errors_still_return_full_batch(
    ledger: TrustLedger,
    fast_dispatch_settings: DispatchSettings,
) -> None:
    class _FlakyResolver:
        def resolve(self, role: Role) -> list[str]:
            if role is Role.AUXILIARY:
                raise RuntimeError("resolver exploded")
            return ["a"]

    def on_outcome(outcome: TaskOutcome) -> None:
        raise ValueError("callback bug")

    dispatcher = Dispatcher(
        gateway=ScriptedGateway(responder=lambda backend_id, payload: valid_answer()),
        resolver=_FlakyResolver(),
        ledger=ledger,
        settings=fast_dispatch_settings,
    )
    tasks = [_task("ok", Role.BULK), _task("boom", Role.AUXILIARY)]

    result = dispatcher.run_concurrent(tasks, on_outcome=on_outcome)

    assert result.outcomes["ok"].status is TaskStatus.SUCCEEDED
    crashed = result.outcomes["boom"]
    assert crashed.status is TaskStatus.FAILED
    assert "resolver exploded" in crashed.failure.message  # type: ignore[union-attr]
