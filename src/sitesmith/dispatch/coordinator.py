"""Pipeline coordinator: catalog -> roles -> dispatch -> validation -> artifact set."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

from sitesmith.config import Settings
from sitesmith.dispatch.assembly import FOOTER_PATH, HEADER_PATH, STYLESHEET_PATH, assemble_site
from sitesmith.dispatch.catalog import BackendCatalog
from sitesmith.dispatch.dispatcher import Dispatcher
from sitesmith.dispatch.errors import CatalogUnavailableError, IllegalTransitionError
from sitesmith.dispatch.intent import detect_page_intent
from sitesmith.dispatch.models import (
    FailureKind,
    GenerationTask,
    ParsedArtifact,
    Role,
    TaskOutcome,
    TaskStatus,
)
from sitesmith.dispatch.prompts import (
    PagePlan,
    foundation_payload,
    page_payload,
    parse_sitemap,
    sitemap_payload,
)
from sitesmith.dispatch.roles import RoleResolver
from sitesmith.dispatch.validator import validate_artifact

logger = logging.getLogger(__name__)

FOUNDATION_TASK_ID = "foundation"
SITEMAP_TASK_ID = "sitemap"
FOUNDATION_PATHS = (STYLESHEET_PATH, HEADER_PATH, FOOTER_PATH, "index.html")
_SITE_TITLE_CHARS = 60


class PipelineState(str, Enum):
    """Coordinator lifecycle states."""

    IDLE = "idle"
    CATALOG_READY = "catalog_ready"
    ROLE_RESOLVED = "role_resolved"
    DISPATCHED = "dispatched"
    VALIDATING = "validating"
    RETRY = "retry"
    DONE = "done"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.CATALOG_READY, PipelineState.FAILED}),
    PipelineState.CATALOG_READY: frozenset({PipelineState.ROLE_RESOLVED, PipelineState.FAILED}),
    PipelineState.ROLE_RESOLVED: frozenset({PipelineState.DISPATCHED, PipelineState.FAILED}),
    PipelineState.DISPATCHED: frozenset({PipelineState.VALIDATING, PipelineState.FAILED}),
    PipelineState.VALIDATING: frozenset(
        {
            PipelineState.DONE,
            PipelineState.RETRY,
            PipelineState.FAILED,
            PipelineState.ROLE_RESOLVED,
        },
    ),
    PipelineState.RETRY: frozenset({PipelineState.DISPATCHED, PipelineState.FAILED}),
    PipelineState.DONE: frozenset(),
    PipelineState.FAILED: frozenset(),
}


class PipelineStateMachine:
    """Tracks the current state and rejects transitions outside the table."""

    def __init__(self) -> None:
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    def transition(self, target: PipelineState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransitionError(
                message=f"Illegal pipeline transition {self.state.value} -> {target.value}",
                source=self.state.value,
                target=target.value,
            )
        logger.debug("Pipeline %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)


@dataclass(slots=True)
class PipelineResult:
    """Final artifact set or terminal failure of one pipeline run."""

    state: PipelineState
    files: dict[str, str] = field(default_factory=dict)
    produced: int = 0
    expected: int = 0
    failures: dict[str, str] = field(default_factory=dict)
    transitions: list[PipelineState] = field(default_factory=list)
    cancelled: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is PipelineState.DONE

    def summary(self) -> str:
        if self.state is PipelineState.FAILED:
            return f"failed: {'; '.join(self.failures.values()) or 'unknown error'}"
        suffix = " (cancelled)" if self.cancelled else ""
        return f"{self.produced} of {self.expected} pages produced{suffix}"


@dataclass(slots=True)
class _ValidatedBatch:
    artifacts: dict[str, ParsedArtifact] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False


class PipelineCoordinator:
    """Sequences one brief through foundation and page generation.

    The foundation task is required: if it cannot be produced the run fails.
    Page tasks are optional and a run with missing pages still completes
    with a partial artifact set.
    """

    def __init__(
        self,
        *,
        catalog: BackendCatalog,
        resolver: RoleResolver,
        dispatcher: Dispatcher,
        settings: Settings,
    ) -> None:
        self._catalog = catalog
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._settings = settings

    def run(self, brief: str, *, cancel_event: threading.Event | None = None) -> PipelineResult:
        """Generate the artifact set for ``brief``."""

        machine = PipelineStateMachine()
        result = PipelineResult(state=machine.state, transitions=machine.history)
        cancel = cancel_event or threading.Event()
        timer = self._start_deadline(cancel)
        try:
            self._run(brief, machine=machine, result=result, cancel=cancel)
        finally:
            if timer is not None:
                timer.cancel()
        result.state = machine.state
        result.cancelled = result.cancelled or cancel.is_set()
        logger.info("Pipeline finished: %s", result.summary())
        return result

    def _run(
        self,
        brief: str,
        *,
        machine: PipelineStateMachine,
        result: PipelineResult,
        cancel: threading.Event,
    ) -> None:
        try:
            self._catalog.refresh()
        except CatalogUnavailableError as exc:
            result.failures["catalog"] = f"{FailureKind.CATALOG_UNAVAILABLE.value}: {exc}"
            machine.transition(PipelineState.FAILED)
            return
        machine.transition(PipelineState.CATALOG_READY)

        intent = detect_page_intent(brief)
        logger.info("Planning %d pages: %s", intent.pages, intent.reason)
        if not self._resolver.resolve(Role.AUTHORITATIVE):
            result.failures[FOUNDATION_TASK_ID] = "No eligible authoritative backend."
            machine.transition(PipelineState.FAILED)
            return
        machine.transition(PipelineState.ROLE_RESOLVED)

        foundation_task = GenerationTask(
            task_id=FOUNDATION_TASK_ID,
            role=Role.AUTHORITATIVE,
            payload=foundation_payload(brief, page_count=intent.pages),
            expected_paths=FOUNDATION_PATHS,
            required=True,
        )
        foundation_batch = self._dispatch_validated(
            [foundation_task],
            machine=machine,
            result=result,
            cancel=cancel,
        )
        foundation = foundation_batch.artifacts.get(FOUNDATION_TASK_ID)
        if foundation is None:
            result.cancelled = foundation_batch.cancelled
            result.failures.update(foundation_batch.failures)
            result.expected = intent.pages
            machine.transition(PipelineState.FAILED)
            return

        raw_sitemap = foundation.metadata.get("pages")
        if isinstance(raw_sitemap, list) or intent.pages == 1:
            sitemap = parse_sitemap(raw_sitemap, page_count=intent.pages)
        else:
            sitemap = self._plan_sitemap(
                brief,
                page_count=intent.pages,
                foundation=foundation,
                cancel=cancel,
            )
        titles = {page.path: page.title for page in sitemap}
        result.expected = len(sitemap)

        machine.transition(PipelineState.ROLE_RESOLVED)
        page_tasks = self._page_tasks(brief, sitemap)
        pages_batch = self._dispatch_validated(
            page_tasks,
            machine=machine,
            result=result,
            cancel=cancel,
        )
        result.failures.update(pages_batch.failures)
        result.cancelled = pages_batch.cancelled

        pages = {
            task.expected_paths[0]: pages_batch.artifacts[task.task_id]
            for task in page_tasks
            if task.task_id in pages_batch.artifacts
        }
        site_title = str(foundation.metadata.get("site_title") or brief.strip()[:_SITE_TITLE_CHARS])
        result.files = assemble_site(
            foundation=foundation,
            pages=pages,
            titles=titles,
            site_title=site_title,
        )
        result.produced = 1 + len(pages)
        machine.transition(PipelineState.DONE)

    def _plan_sitemap(
        self,
        brief: str,
        *,
        page_count: int,
        foundation: ParsedArtifact,
        cancel: threading.Event,
    ) -> list[PagePlan]:
        """Ask an auxiliary backend for the sitemap the foundation left out.

        Failure here is not fatal: the run continues with the home page only.
        """

        task = GenerationTask(
            task_id=SITEMAP_TASK_ID,
            role=Role.AUXILIARY,
            payload=sitemap_payload(
                brief,
                page_count=page_count,
                navigation=foundation.files.get(HEADER_PATH, ""),
            ),
            required=False,
        )
        batch = self._dispatcher.run_concurrent(
            [task],
            concurrency_limit=1,
            max_attempts_per_task=self._settings.dispatch.max_attempts_per_task,
            cancel_event=cancel,
        )
        outcome = batch.outcomes[SITEMAP_TASK_ID]
        document = outcome.repaired.document if outcome.repaired is not None else None
        raw = document.get("pages") if isinstance(document, dict) else None
        sitemap = parse_sitemap(raw, page_count=page_count)
        if not isinstance(raw, list):
            logger.warning("No sitemap from auxiliary task, keeping the home page only")
        else:
            logger.info("Sitemap of %d pages planned by %s", len(sitemap), outcome.backend_id)
        return sitemap

    def _page_tasks(self, brief: str, sitemap: Sequence[PagePlan]) -> list[GenerationTask]:
        return [
            GenerationTask(
                task_id=f"page:{page.path}",
                role=Role.BULK,
                payload=page_payload(brief, page=page, sitemap=sitemap),
                expected_paths=(page.path,),
                required=False,
            )
            for page in sitemap
            if page.path != "index.html"
        ]

    def _dispatch_validated(
        self,
        tasks: list[GenerationTask],
        *,
        machine: PipelineStateMachine,
        result: PipelineResult,
        cancel: threading.Event,
    ) -> _ValidatedBatch:
        """Dispatch ``tasks``, validate successes and escalate invalid ones.

        Leaves the machine in VALIDATING; the caller decides the next state.
        """

        settings = self._settings
        batch = _ValidatedBatch()
        pending = list(tasks)
        retries = 0
        while True:
            machine.transition(PipelineState.DISPATCHED)
            outcome_batch = self._dispatcher.run_concurrent(
                pending,
                concurrency_limit=settings.dispatch.concurrency_limit,
                max_attempts_per_task=settings.dispatch.max_attempts_per_task,
                cancel_event=cancel,
            )
            machine.transition(PipelineState.VALIDATING)
            batch.cancelled = batch.cancelled or outcome_batch.cancelled

            escalate: list[GenerationTask] = []
            for task in pending:
                outcome = outcome_batch.outcomes[task.task_id]
                retry_task = self._validate_outcome(task, outcome, batch=batch, result=result)
                if retry_task is not None:
                    escalate.append(retry_task)

            if not escalate:
                return batch
            if retries >= settings.dispatch.max_validation_retries or cancel.is_set():
                for task in escalate:
                    batch.failures.setdefault(
                        task.task_id,
                        f"{FailureKind.VALIDATION_ERROR.value}: retry budget exhausted",
                    )
                return batch
            retries += 1
            machine.transition(PipelineState.RETRY)
            pending = escalate

    def _validate_outcome(
        self,
        task: GenerationTask,
        outcome: TaskOutcome,
        *,
        batch: _ValidatedBatch,
        result: PipelineResult,
    ) -> GenerationTask | None:
        if outcome.status is TaskStatus.NOT_ATTEMPTED:
            batch.failures[task.task_id] = TaskStatus.NOT_ATTEMPTED.value
            return None
        if outcome.status is TaskStatus.FAILED or outcome.repaired is None:
            failure = outcome.failure
            if failure is not None:
                last = failure.last_kind.value if failure.last_kind else "none"
                batch.failures[task.task_id] = (
                    f"{failure.kind.value} (last: {last}) after "
                    f"{', '.join(failure.attempted_backends) or 'no backends'}: {failure.message}"
                )
            else:
                batch.failures[task.task_id] = FailureKind.EXHAUSTED.value
            return None

        report = validate_artifact(
            outcome.repaired.document,
            expected_paths=task.expected_paths,
            min_content_chars=self._settings.validation.min_content_chars,
            sanitize_colors=self._settings.validation.sanitize_colors,
        )
        result.warnings.extend(f"{task.task_id}: {warning}" for warning in report.warnings)
        if report.is_valid and report.artifact is not None:
            batch.artifacts[task.task_id] = report.artifact
            batch.failures.pop(task.task_id, None)
            return None

        message = "; ".join(report.errors)
        batch.failures[task.task_id] = f"{FailureKind.VALIDATION_ERROR.value}: {message}"
        logger.warning(
            "Task %s from %s failed validation: %s",
            task.task_id,
            outcome.backend_id,
            message,
        )
        excluded = task.exclude_backends
        if outcome.backend_id is not None:
            excluded = (*excluded, outcome.backend_id)
        return replace(
            task,
            role=Role.ESCALATION,
            attempt=task.attempt + outcome.attempts,
            backend_id=None,
            exclude_backends=excluded,
        )

    def _start_deadline(self, cancel: threading.Event) -> threading.Timer | None:
        timeout = self._settings.dispatch.pipeline_timeout_seconds
        if timeout <= 0:
            return None
        timer = threading.Timer(timeout, cancel.set)
        timer.daemon = True
        timer.start()
        return timer
