"""
Action Repository.

============================================================
PURPOSE
============================================================
Data access for the action queue.

============================================================
CONCURRENCY CONTRACT
============================================================
- claim() is a single conditional UPDATE ... WHERE status='Pending'.
  Exactly one caller wins; losers see rowcount 0.
- finish() writes status, result and completed_at in one UPDATE
  guarded on status='Running'.
- cancel_pending() is guarded on status='Pending'.

No read-then-write sequence decides a transition.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models import (
    Action,
    ActionStatus,
    ArchivedAction,
    TERMINAL_ACTION_STATES,
    utc_now,
)
from storage.repositories.base import BaseRepository


class ActionRepository(BaseRepository[Action]):
    """
    Repository for Action entities.

    ============================================================
    ORDERING
    ============================================================
    Due actions are returned by priority ascending (1 is most
    urgent), then created_at, then id.
    ============================================================
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, Action, "ActionRepository")

    # =========================================================
    # CREATE
    # =========================================================

    def create(
        self,
        device_id: Optional[str],
        action_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 5,
        scheduled_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Action:
        """Insert a Pending action."""
        action = Action(
            device_id=device_id,
            action_type=action_type,
            status=ActionStatus.PENDING.value,
            priority=priority,
            payload=payload,
            scheduled_at=scheduled_at,
            created_by=created_by,
            created_at=created_at or utc_now(),
            attempts=0,
            cancel_requested=False,
        )
        return self._add(action)

    # =========================================================
    # READS
    # =========================================================

    def get(self, action_id: int) -> Optional[Action]:
        """Get an action by id."""
        return self._get_by_id(action_id)

    def get_or_raise(self, action_id: int) -> Action:
        """Get an action by id, raising RecordNotFoundError if absent."""
        return self._get_by_id_or_raise(action_id, id_field="action_id")

    def select_due(self, now: datetime, limit: int) -> List[Action]:
        """
        Pending actions whose scheduled time has come.

        Args:
            now: Current time
            limit: Maximum rows returned
        """
        stmt = (
            select(Action)
            .where(
                Action.status == ActionStatus.PENDING.value,
                or_(Action.scheduled_at.is_(None), Action.scheduled_at <= now),
            )
            .order_by(Action.priority.asc(), Action.created_at.asc(), Action.id.asc())
            .limit(limit)
        )
        return self._execute_query(stmt)

    def list_recent(self, limit: int = 50) -> List[Action]:
        """Most recently created actions first."""
        stmt = select(Action).order_by(Action.created_at.desc(), Action.id.desc()).limit(limit)
        return self._execute_query(stmt)

    def list_by_status(self, status: ActionStatus) -> List[Action]:
        """All actions currently in a status, in id order."""
        stmt = select(Action).where(Action.status == status.value).order_by(Action.id)
        return self._execute_query(stmt)

    def is_cancel_requested(self, action_id: int) -> bool:
        """Whether cancellation was requested for a Running action."""
        stmt = select(Action.cancel_requested).where(Action.id == action_id)
        try:
            return bool(self._session.execute(stmt).scalar())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "is_cancel_requested")
            raise

    def count_by_status(self) -> Dict[str, int]:
        """Action count per status value."""
        stmt = select(Action.status, func.count()).group_by(Action.status)
        try:
            return {status: count for status, count in self._session.execute(stmt).all()}
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count_by_status")
            raise

    # =========================================================
    # GUARDED TRANSITIONS
    # =========================================================

    def claim(self, action_id: int, now: datetime) -> bool:
        """
        Pending -> Running.

        Returns:
            True only for the single caller whose UPDATE matched
        """
        stmt = (
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.PENDING.value)
            .values(status=ActionStatus.RUNNING.value, started_at=now)
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, "claim") == 1

    def record_attempt(self, action_id: int, attempts: int) -> None:
        """Store the number of attempts made so far."""
        stmt = (
            update(Action)
            .where(Action.id == action_id)
            .values(attempts=attempts)
            .execution_options(synchronize_session=False)
        )
        self._execute_update(stmt, "record_attempt")

    def finish(
        self,
        action_id: int,
        status: ActionStatus,
        result: Dict[str, Any],
        completed_at: datetime,
        attempts: Optional[int] = None,
    ) -> bool:
        """
        Running -> Completed | Failed, with result and completion time
        written in the same statement.
        """
        values: Dict[str, Any] = {
            "status": status.value,
            "result": result,
            "completed_at": completed_at,
        }
        if attempts is not None:
            values["attempts"] = attempts
        stmt = (
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.RUNNING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, "finish") == 1

    def cancel_pending(self, action_id: int, now: datetime, result: Dict[str, Any]) -> bool:
        """Pending -> Cancelled."""
        stmt = (
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.PENDING.value)
            .values(status=ActionStatus.CANCELLED.value, completed_at=now, result=result)
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, "cancel_pending") == 1

    def request_cancel(self, action_id: int) -> bool:
        """Flag a Running action for cooperative cancellation."""
        stmt = (
            update(Action)
            .where(Action.id == action_id, Action.status == ActionStatus.RUNNING.value)
            .values(cancel_requested=True)
            .execution_options(synchronize_session=False)
        )
        return self._execute_update(stmt, "request_cancel") == 1

    def fail_orphaned_running(
        self,
        now: datetime,
        result: Dict[str, Any],
        exclude_ids: Sequence[int] = (),
    ) -> int:
        """
        Fail Running rows no live worker owns (left by a previous process).

        Returns:
            Number of rows failed
        """
        stmt = (
            update(Action)
            .where(Action.status == ActionStatus.RUNNING.value)
            .values(status=ActionStatus.FAILED.value, completed_at=now, result=result)
            .execution_options(synchronize_session=False)
        )
        if exclude_ids:
            stmt = stmt.where(Action.id.not_in(list(exclude_ids)))
        return self._execute_update(stmt, "fail_orphaned_running")

    # =========================================================
    # RETENTION
    # =========================================================

    def archive_terminal(self, older_than: datetime, reason: str = "retention") -> int:
        """
        Move terminal actions completed before `older_than` into the archive.

        Returns:
            Number of actions archived
        """
        terminal = [s.value for s in TERMINAL_ACTION_STATES]
        stmt = select(Action).where(
            Action.status.in_(terminal),
            Action.completed_at.is_not(None),
            Action.completed_at < older_than,
        )
        actions = self._execute_query(stmt)
        if not actions:
            return 0

        archived_at = utc_now()
        for action in actions:
            self._session.add(ArchivedAction(
                id=action.id,
                device_id=action.device_id,
                action_type=action.action_type,
                status=action.status,
                priority=action.priority,
                payload=action.payload,
                result=action.result,
                attempts=action.attempts,
                scheduled_at=action.scheduled_at,
                started_at=action.started_at,
                completed_at=action.completed_at,
                created_at=action.created_at,
                created_by=action.created_by,
                archived_at=archived_at,
                archive_reason=reason,
            ))
        self._flush("archive_terminal")

        ids = [action.id for action in actions]
        self._execute_update(
            delete(Action).where(Action.id.in_(ids)).execution_options(synchronize_session=False),
            "archive_terminal",
        )
        for action in actions:
            self._session.expunge(action)
        self._logger.info(f"Archived {len(ids)} terminal actions")
        return len(ids)

    def count_archived(self) -> int:
        """Rows in the archive table."""
        stmt = select(func.count()).select_from(ArchivedAction)
        try:
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count_archived")
            raise
