"""Checkpoint store facade backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import re
import secrets
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from wave_orchestrator.checkpoint.models import (
    ActionResult,
    ActionView,
    BaselineView,
    BaselineWrite,
    CheckpointData,
    CommitView,
    MilestoneCheckpointData,
    MilestonePhase,
    MilestoneView,
    PlannedWorkflow,
    StatusCounts,
    WorkflowLinkView,
    WorkflowPhase,
    WorkflowStatus,
    WorkflowView,
    check_milestone_transition,
    check_workflow_transition,
)
from wave_orchestrator.errors import (
    InvalidTransitionError,
    PersistenceError,
    RecordNotFoundError,
)
from wave_orchestrator.storage.alembic_runner import upgrade_head
from wave_orchestrator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from wave_orchestrator.storage.sqlmodel_models import (
    Action,
    Baseline,
    Commit,
    Milestone,
    MilestoneWorkflow,
    Workflow,
)

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


class CheckpointRepository:
    """Durable orchestration state shared by every component and process."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Apply pending migrations; safe to call on every open."""

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            upgrade_head(self.db_path)
        except (SQLAlchemyError, OSError) as error:
            raise PersistenceError(
                f"Cannot open checkpoint store at {self.db_path}: {error}",
            ) from error

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceError(f"Checkpoint store operation failed: {error}") from error

    # Workflows

    def create_workflow(
        self,
        *,
        item_number: int,
        branch: str,
        worktree: str | None = None,
        phase: WorkflowPhase = WorkflowPhase.PLANNING,
    ) -> WorkflowView:
        """Create a running workflow for one work item."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = Workflow(
                id=new_workflow_id(item_number),
                item_number=item_number,
                branch=branch,
                worktree=worktree,
                phase=phase.value,
                status=WorkflowStatus.RUNNING.value,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workflow_view(row)

    def load_workflow(self, workflow_id: str) -> CheckpointData | None:
        """Workflow with its actions and commits in insertion order."""

        with self._session() as session:
            row = session.get(Workflow, workflow_id)
            if row is None:
                return None
            action_rows = session.exec(
                select(Action)
                .where(Action.workflow_id == workflow_id)
                .order_by(col(Action.id).asc()),
            ).all()
            commit_rows = session.exec(
                select(Commit)
                .where(Commit.workflow_id == workflow_id)
                .order_by(col(Commit.id).asc()),
            ).all()
            return CheckpointData(
                workflow=_to_workflow_view(row),
                actions=[_to_action_view(item) for item in action_rows],
                commits=[_to_commit_view(item) for item in commit_rows],
            )

    def find_workflow_by_item(self, item_number: int) -> WorkflowView | None:
        """Most recently created workflow for a work item."""

        with self._session() as session:
            row = session.exec(
                select(Workflow)
                .where(Workflow.item_number == item_number)
                .order_by(col(Workflow.created_at).desc(), col(Workflow.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_workflow_view(row) if row is not None else None

    def set_workflow_phase(self, workflow_id: str, phase: WorkflowPhase) -> WorkflowView:
        with self._session() as session:
            row = _get_workflow_row(session, workflow_id)
            row.phase = WorkflowPhase(phase).value
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workflow_view(row)

    def set_workflow_worktree(self, workflow_id: str, worktree: str | None) -> WorkflowView:
        with self._session() as session:
            row = _get_workflow_row(session, workflow_id)
            row.worktree = worktree
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workflow_view(row)

    def set_workflow_status(self, workflow_id: str, status: WorkflowStatus) -> WorkflowView:
        """Move a workflow along its lifecycle.

        Raises ``InvalidTransitionError`` for transitions the lifecycle does not
        allow, including ``failed -> running`` (use ``retry_workflow``).
        """

        target = WorkflowStatus(status)
        with self._session() as session:
            row = _get_workflow_row(session, workflow_id)
            check_workflow_transition(WorkflowStatus(row.status), target)
            row.status = target.value
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_workflow_view(row)

    def retry_workflow(self, workflow_id: str) -> WorkflowView:
        """Return a failed or paused workflow to running and bump its retry counter."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = _get_workflow_row(session, workflow_id)
            previous = WorkflowStatus(row.status)
            if previous not in {WorkflowStatus.FAILED, WorkflowStatus.PAUSED}:
                raise InvalidTransitionError(
                    f"Only failed or paused workflows can be retried, got {previous.value}.",
                )
            next_retry_count = row.retry_count + 1
            result = session.exec(  # type: ignore[call-overload]
                sa_update(Workflow)
                .where(
                    col(Workflow.id) == workflow_id,
                    col(Workflow.status) == previous.value,
                )
                .values(
                    status=WorkflowStatus.RUNNING.value,
                    retry_count=col(Workflow.retry_count) + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    f"Workflow {workflow_id} changed status concurrently; retry aborted.",
                )
            _add_action(
                session,
                workflow_id=workflow_id,
                action="workflow-retried",
                result=ActionResult.SUCCESS,
                metadata={"previous_status": previous.value, "retry_count": next_retry_count},
            )
            session.commit()
            session.refresh(row)
            return _to_workflow_view(row)

    def increment_retry(self, workflow_id: str) -> int:
        """Bump the retry counter without touching status; returns the new count."""

        with self._session() as session:
            row = _get_workflow_row(session, workflow_id)
            session.exec(  # type: ignore[call-overload]
                sa_update(Workflow)
                .where(col(Workflow.id) == workflow_id)
                .values(
                    retry_count=col(Workflow.retry_count) + 1,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            session.refresh(row)
            return row.retry_count

    def list_active_workflows(self) -> list[WorkflowView]:
        """Running or paused workflows, most recently updated first."""

        with self._session() as session:
            rows = session.exec(
                select(Workflow)
                .where(
                    col(Workflow.status).in_(
                        [WorkflowStatus.RUNNING.value, WorkflowStatus.PAUSED.value],
                    ),
                )
                .order_by(col(Workflow.updated_at).desc()),
            ).all()
            return [_to_workflow_view(row) for row in rows]

    def cleanup_stale_workflows(self, threshold_hours: int = 24) -> int:
        """Fail running workflows untouched for longer than the threshold."""

        now = utc_now()
        cutoff = to_db_datetime(now - timedelta(hours=threshold_hours))
        with self._session() as session:
            rows = session.exec(
                select(Workflow).where(
                    Workflow.status == WorkflowStatus.RUNNING.value,
                    col(Workflow.updated_at) < cutoff,
                ),
            ).all()
            for row in rows:
                last_update = to_utc_aware(row.updated_at).isoformat()
                row.status = WorkflowStatus.FAILED.value
                row.updated_at = to_db_datetime(now)
                session.add(row)
                _add_action(
                    session,
                    workflow_id=row.id,
                    action="workflow-stale-cleanup",
                    result=ActionResult.FAILED,
                    metadata={
                        "reason": f"Workflow inactive for more than {threshold_hours} hours",
                        "last_update": last_update,
                    },
                )
                logger.info(
                    "Marked stale workflow %s (item #%d) as failed",
                    row.id,
                    row.item_number,
                )
            session.commit()
            return len(rows)

    # Audit trail

    def log_action(
        self,
        workflow_id: str,
        action: str,
        result: ActionResult,
        metadata: dict[str, Any] | None = None,
    ) -> ActionView:
        """Append an immutable audit action."""

        with self._session() as session:
            _get_workflow_row(session, workflow_id)
            row = _add_action(
                session,
                workflow_id=workflow_id,
                action=action,
                result=ActionResult(result),
                metadata=metadata,
            )
            session.commit()
            session.refresh(row)
            return _to_action_view(row)

    def log_action_safe(
        self,
        workflow_id: str,
        action: str,
        result: ActionResult,
        metadata: dict[str, Any] | None = None,
    ) -> ActionView | None:
        """Like ``log_action`` but never raises.

        A failed write is retried once as ``<action>_failed`` carrying the error,
        so the audit trail still shows that something was attempted.
        """

        try:
            return self.log_action(workflow_id, action, result, metadata)
        except PersistenceError as error:
            logger.warning("Failed to log action %s for %s: %s", action, workflow_id, error)
            try:
                return self.log_action(
                    workflow_id,
                    f"{action}_failed",
                    ActionResult.FAILED,
                    {"error": str(error), "original_result": ActionResult(result).value},
                )
            except PersistenceError as fallback_error:
                logger.error(
                    "Failed to log fallback action for %s: %s",
                    workflow_id,
                    fallback_error,
                )
                return None

    def latest_action(
        self,
        workflow_id: str,
        action: str,
        result: ActionResult | None = None,
    ) -> ActionView | None:
        with self._session() as session:
            statement = select(Action).where(
                Action.workflow_id == workflow_id,
                Action.action == action,
            )
            if result is not None:
                statement = statement.where(Action.result == ActionResult(result).value)
            row = session.exec(statement.order_by(col(Action.id).desc()).limit(1)).one_or_none()
            return _to_action_view(row) if row is not None else None

    def log_commit(self, workflow_id: str, sha: str, message: str) -> CommitView:
        with self._session() as session:
            _get_workflow_row(session, workflow_id)
            row = Commit(
                workflow_id=workflow_id,
                sha=sha,
                message=message,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_commit_view(row)

    # Milestones

    def create_milestone(
        self,
        name: str,
        *,
        tracker_milestone_number: int | None = None,
    ) -> MilestoneView:
        with self._session() as session:
            row = _new_milestone_row(name, tracker_milestone_number)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_milestone_view(row)

    def get_milestone(self, milestone_id: str) -> MilestoneCheckpointData | None:
        """Milestone with its baseline and linked workflows ordered by wave."""

        with self._session() as session:
            row = session.get(Milestone, milestone_id)
            if row is None:
                return None
            baseline = session.exec(
                select(Baseline).where(Baseline.milestone_id == milestone_id),
            ).one_or_none()
            return MilestoneCheckpointData(
                milestone=_to_milestone_view(row),
                baseline=_to_baseline_view(baseline) if baseline is not None else None,
                links=_select_links(session, milestone_id),
            )

    def find_milestone_by_name(self, name: str) -> MilestoneView | None:
        """Most recently created milestone with this name."""

        with self._session() as session:
            row = session.exec(
                select(Milestone)
                .where(Milestone.name == name)
                .order_by(col(Milestone.created_at).desc(), col(Milestone.id).desc())
                .limit(1),
            ).one_or_none()
            return _to_milestone_view(row) if row is not None else None

    def list_active_milestones(self) -> list[MilestoneView]:
        with self._session() as session:
            rows = session.exec(
                select(Milestone)
                .where(
                    col(Milestone.status).in_(
                        [WorkflowStatus.RUNNING.value, WorkflowStatus.PAUSED.value],
                    ),
                )
                .order_by(col(Milestone.updated_at).desc()),
            ).all()
            return [_to_milestone_view(row) for row in rows]

    def set_milestone_phase(self, milestone_id: str, phase: MilestonePhase) -> MilestoneView:
        with self._session() as session:
            row = _get_milestone_row(session, milestone_id)
            row.phase = MilestonePhase(phase).value
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_milestone_view(row)

    def set_milestone_status(self, milestone_id: str, status: WorkflowStatus) -> MilestoneView:
        target = WorkflowStatus(status)
        with self._session() as session:
            row = _get_milestone_row(session, milestone_id)
            check_milestone_transition(WorkflowStatus(row.status), target)
            row.status = target.value
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_milestone_view(row)

    def link_workflow(
        self,
        milestone_id: str,
        workflow_id: str,
        wave_number: int | None = None,
    ) -> bool:
        """Assign a workflow to a milestone wave; returns False when already linked."""

        with self._session() as session:
            _get_milestone_row(session, milestone_id)
            _get_workflow_row(session, workflow_id)
            inserted = _insert_link(session, milestone_id, workflow_id, wave_number)
            session.commit()
            return inserted

    def list_milestone_links(self, milestone_id: str) -> list[WorkflowLinkView]:
        with self._session() as session:
            return _select_links(session, milestone_id)

    def milestone_status_counts(self, milestone_id: str) -> StatusCounts:
        with self._session() as session:
            rows = session.exec(
                select(Workflow.status, func.count())
                .join(MilestoneWorkflow, col(MilestoneWorkflow.workflow_id) == col(Workflow.id))
                .where(MilestoneWorkflow.milestone_id == milestone_id)
                .group_by(Workflow.status),
            ).all()
        counts = StatusCounts()
        for status, count in rows:
            setattr(counts, WorkflowStatus(status).value, int(count))
        return counts

    def record_plan(
        self,
        name: str,
        workflows: Sequence[PlannedWorkflow],
        *,
        tracker_milestone_number: int | None = None,
    ) -> MilestoneCheckpointData:
        """Persist a fresh plan: milestone, workflows and wave links in one transaction.

        A crash mid-way leaves no partial plan behind.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            milestone = _new_milestone_row(name, tracker_milestone_number)
            milestone.phase = MilestonePhase.EXECUTE.value
            session.add(milestone)
            session.flush()
            for planned in workflows:
                row = Workflow(
                    id=new_workflow_id(planned.item_number),
                    item_number=planned.item_number,
                    branch=planned.branch,
                    worktree=None,
                    phase=WorkflowPhase.PLANNING.value,
                    status=WorkflowStatus.RUNNING.value,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                _insert_link(session, milestone.id, row.id, planned.wave_number)
            session.commit()
            session.refresh(milestone)
            return MilestoneCheckpointData(
                milestone=_to_milestone_view(milestone),
                links=_select_links(session, milestone.id),
            )

    # Baselines

    def save_baseline(self, milestone_id: str, baseline: BaselineWrite) -> BaselineView:
        """Replace the milestone's baseline snapshot."""

        with self._session() as session:
            _get_milestone_row(session, milestone_id)
            session.exec(  # type: ignore[call-overload]
                sa_delete(Baseline).where(col(Baseline.milestone_id) == milestone_id),
            )
            row = Baseline(
                milestone_id=milestone_id,
                captured_at=to_db_datetime(utc_now()),
                lint_exit_code=baseline.lint_exit_code,
                lint_warnings=baseline.lint_warnings,
                lint_errors=baseline.lint_errors,
                typecheck_exit_code=baseline.typecheck_exit_code,
                typecheck_errors=baseline.typecheck_errors,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_baseline_view(row)


def new_workflow_id(item_number: int) -> str:
    return f"workflow-{item_number}-{_epoch_ms()}-{secrets.token_hex(3)}"


def new_milestone_id(name: str) -> str:
    slug = _SLUG_RE.sub("-", name.lower()).strip("-") or "milestone"
    return f"milestone-{slug}-{_epoch_ms()}-{secrets.token_hex(3)}"


def _epoch_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def _new_milestone_row(name: str, tracker_milestone_number: int | None) -> Milestone:
    now = to_db_datetime(utc_now())
    return Milestone(
        id=new_milestone_id(name),
        name=name,
        tracker_milestone_number=tracker_milestone_number,
        phase=MilestonePhase.PLANNING.value,
        status=WorkflowStatus.RUNNING.value,
        created_at=now,
        updated_at=now,
    )


def _get_workflow_row(session: Session, workflow_id: str) -> Workflow:
    row = session.get(Workflow, workflow_id)
    if row is None:
        raise RecordNotFoundError(f"Workflow not found: {workflow_id}")
    return row


def _get_milestone_row(session: Session, milestone_id: str) -> Milestone:
    row = session.get(Milestone, milestone_id)
    if row is None:
        raise RecordNotFoundError(f"Milestone not found: {milestone_id}")
    return row


def _insert_link(
    session: Session,
    milestone_id: str,
    workflow_id: str,
    wave_number: int | None,
) -> bool:
    result = session.exec(  # type: ignore[call-overload]
        sqlite_insert(MilestoneWorkflow)
        .values(
            milestone_id=milestone_id,
            workflow_id=workflow_id,
            wave_number=wave_number,
            created_at=to_db_datetime(utc_now()),
        )
        .on_conflict_do_nothing(),
    )
    return result.rowcount == 1


def _select_links(session: Session, milestone_id: str) -> list[WorkflowLinkView]:
    rows = session.exec(
        select(Workflow, MilestoneWorkflow.wave_number)
        .join(MilestoneWorkflow, col(MilestoneWorkflow.workflow_id) == col(Workflow.id))
        .where(MilestoneWorkflow.milestone_id == milestone_id)
        .order_by(
            col(MilestoneWorkflow.wave_number).asc(),
            col(Workflow.item_number).asc(),
        ),
    ).all()
    return [
        WorkflowLinkView(workflow=_to_workflow_view(workflow), wave_number=wave_number)
        for workflow, wave_number in rows
    ]


def _add_action(
    session: Session,
    *,
    workflow_id: str,
    action: str,
    result: ActionResult,
    metadata: dict[str, Any] | None,
) -> Action:
    row = Action(
        workflow_id=workflow_id,
        action=action,
        result=result.value,
        metadata_json=json.dumps(metadata, ensure_ascii=False, sort_keys=True)
        if metadata
        else None,
        created_at=to_db_datetime(utc_now()),
    )
    session.add(row)
    return row


def _parse_metadata(raw: str | None, *, action_id: int | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unparseable metadata on action %s; ignoring it", action_id)
        return None
    return parsed if isinstance(parsed, dict) else None


def _to_workflow_view(row: Workflow) -> WorkflowView:
    return WorkflowView(
        workflow_id=row.id,
        item_number=row.item_number,
        branch=row.branch,
        worktree=row.worktree,
        phase=WorkflowPhase(row.phase),
        status=WorkflowStatus(row.status),
        retry_count=row.retry_count,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_action_view(row: Action) -> ActionView:
    return ActionView(
        action_id=row.id or 0,
        workflow_id=row.workflow_id,
        action=row.action,
        result=ActionResult(row.result),
        created_at=to_utc_aware(row.created_at),
        metadata=_parse_metadata(row.metadata_json, action_id=row.id),
    )


def _to_commit_view(row: Commit) -> CommitView:
    return CommitView(
        commit_id=row.id or 0,
        workflow_id=row.workflow_id,
        sha=row.sha,
        message=row.message,
        created_at=to_utc_aware(row.created_at),
    )


def _to_milestone_view(row: Milestone) -> MilestoneView:
    return MilestoneView(
        milestone_id=row.id,
        name=row.name,
        tracker_milestone_number=row.tracker_milestone_number,
        phase=MilestonePhase(row.phase),
        status=WorkflowStatus(row.status),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_baseline_view(row: Baseline) -> BaselineView:
    return BaselineView(
        milestone_id=row.milestone_id,
        captured_at=to_utc_aware(row.captured_at),
        lint_exit_code=row.lint_exit_code,
        lint_warnings=row.lint_warnings,
        lint_errors=row.lint_errors,
        typecheck_exit_code=row.typecheck_exit_code,
        typecheck_errors=row.typecheck_errors,
    )
