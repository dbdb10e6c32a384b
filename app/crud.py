import asyncio
import json
import math
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite

import models
from database import Database
from errors import StorageError
from upstream import Outcome, Success

HISTORY_PAGE_LIMIT = 50


def _upsert_for(dialect: str):
    if dialect == "sqlite":
        return sqlite.insert
    if dialect == "postgresql":
        return postgresql.insert
    raise StorageError(f"Session upsert is not supported on {dialect}")


def _timestamp(value) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class SessionStore:
    """Maps an opaque session token to its durable user row."""

    def __init__(self, database: Database):
        self.database = database

    def resolve_or_create(self, token: str) -> models.UserSession:
        """Return the session for `token`, creating it on first sight.

        A single INSERT .. ON CONFLICT(token) DO UPDATE either creates the row
        or touches last_active, so concurrent first contact cannot produce two
        rows for one token.
        """
        now = models.utcnow()
        insert = _upsert_for(self.database.dialect)
        stmt = (
            insert(models.UserSession)
            .values(token=token, created_at=now, last_active=now)
            .on_conflict_do_update(index_elements=["token"], set_={"last_active": now})
            .returning(models.UserSession)
            .execution_options(populate_existing=True)
        )
        with self.database.session_scope() as db:
            return db.scalars(stmt).one()


class CommandLedger:
    """Append-only record of execution attempts and their results."""

    def __init__(self, database: Database):
        self.database = database

    def record(
        self,
        session: models.UserSession,
        command: str,
        elapsed_ms: int,
        outcome: Outcome,
    ) -> models.CommandRecord:
        succeeded = isinstance(outcome, Success)
        with self.database.session_scope() as db:
            entry = models.CommandRecord(
                session_id=session.id,
                command=command,
                executed_at=models.utcnow(),
                execution_time=max(0, int(elapsed_ms)),
                success=succeeded,
            )
            db.add(entry)
            db.flush()  # assigns entry.id
            if succeeded:
                result = models.ResultRecord(
                    command_id=entry.id, result_data=json.dumps(outcome.payload)
                )
            else:
                result = models.ResultRecord(
                    command_id=entry.id, error_message=outcome.message or "Unknown error occurred"
                )
            db.add(result)
        return entry


def _serialize_history(rows) -> List[Dict]:
    """Convert (command, result) rows to plain dicts while the session is open."""
    serialized = []
    for command, result in rows:
        serialized.append({
            "id": command.id,
            "command": command.command,
            "executed_at": _timestamp(command.executed_at),
            "execution_time": command.execution_time,
            "success": bool(command.success),
            "result": json.loads(result.result_data) if result and result.result_data is not None else None,
            "error": result.error_message if result else None,
        })
    return serialized


class HistoryReader:
    """Read side of the ledger: history pages, aggregates and the per-session clear."""

    def __init__(self, database: Database):
        self.database = database

    def list_history(self, session: models.UserSession, limit: int = HISTORY_PAGE_LIMIT) -> List[Dict]:
        """Newest-first commands joined to their results, at most HISTORY_PAGE_LIMIT."""
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        limit = min(int(limit), HISTORY_PAGE_LIMIT)
        stmt = (
            select(models.CommandRecord, models.ResultRecord)
            .outerjoin(models.ResultRecord, models.ResultRecord.command_id == models.CommandRecord.id)
            .where(models.CommandRecord.session_id == session.id)
            .order_by(models.CommandRecord.executed_at.desc(), models.CommandRecord.id.desc())
            .limit(limit)
        )
        with self.database.session_scope() as db:
            rows = db.execute(stmt).all()
            return _serialize_history(rows)

    def count_commands(self, session: models.UserSession, success: Optional[bool] = None) -> int:
        stmt = select(func.count(models.CommandRecord.id)).where(
            models.CommandRecord.session_id == session.id
        )
        if success is not None:
            stmt = stmt.where(models.CommandRecord.success == success)
        with self.database.session_scope() as db:
            return db.scalar(stmt) or 0

    def average_success_time(self, session: models.UserSession) -> int:
        """Mean execution_time of successful commands, rounded half up; 0 when there are none."""
        stmt = select(func.avg(models.CommandRecord.execution_time)).where(
            models.CommandRecord.session_id == session.id,
            models.CommandRecord.success == True,  # noqa: E712
        )
        with self.database.session_scope() as db:
            avg = db.scalar(stmt)
        if avg is None:
            return 0
        return int(math.floor(float(avg) + 0.5))

    async def analytics(self, session: models.UserSession) -> Dict[str, int]:
        # Four independent reads; any failure fails the whole call.
        total, successful, failed, avg_time = await asyncio.gather(
            asyncio.to_thread(self.count_commands, session),
            asyncio.to_thread(self.count_commands, session, True),
            asyncio.to_thread(self.count_commands, session, False),
            asyncio.to_thread(self.average_success_time, session),
        )
        return {
            "total": total,
            "successful": successful,
            "failed": failed,
            "avgTime": avg_time,
        }

    def clear_history(self, session: models.UserSession) -> int:
        """Delete the session's results, then its commands, in one transaction.

        Returns the number of commands removed.
        """
        owned = select(models.CommandRecord.id).where(models.CommandRecord.session_id == session.id)
        with self.database.session_scope() as db:
            db.execute(
                delete(models.ResultRecord)
                .where(models.ResultRecord.command_id.in_(owned))
                .execution_options(synchronize_session=False)
            )
            removed = db.execute(
                delete(models.CommandRecord)
                .where(models.CommandRecord.session_id == session.id)
                .execution_options(synchronize_session=False)
            )
            return removed.rowcount
