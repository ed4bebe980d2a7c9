"""Batch sinks for the audit pipeline and the queries behind its read side."""

from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy import delete, or_, select

from gatehouse.audit.models import ActivityRecordModel, AuditLogModel
from gatehouse.common.database import DatabaseManager


class DocumentStore(Protocol):
    async def insert_many(self, records: list[dict[str, Any]]) -> None: ...

    async def find(self, **filters: Any) -> list[ActivityRecordModel]: ...

    async def delete_older_than(self, cutoff: datetime, tenant_id: Optional[int] = None) -> int: ...


class AuditRowStore(Protocol):
    async def insert_many(self, rows: list[dict[str, Any]]) -> None: ...


class SqlDocumentStore:
    """Activity records on the document engine. One transaction per batch."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def insert_many(self, records: list[dict[str, Any]]) -> None:
        async with self.db.get_session() as session:
            session.add_all([ActivityRecordModel(**record) for record in records])

    async def find(
        self,
        tenant_id: Optional[int] = None,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        actions: Optional[Iterable[str]] = None,
        action_prefix: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ActivityRecordModel]:
        """Newest-first activity records matching every given filter.

        ``actions`` and ``action_prefix`` are alternatives: a record matches
        if its action is in the set or starts with the prefix.
        """
        query = select(ActivityRecordModel)
        if tenant_id is not None:
            query = query.where(ActivityRecordModel.tenant_id == tenant_id)
        if user_id is not None:
            query = query.where(ActivityRecordModel.user_id == user_id)
        if action:
            query = query.where(ActivityRecordModel.action == action)

        alternatives = []
        if actions:
            alternatives.append(ActivityRecordModel.action.in_(list(actions)))
        if action_prefix:
            alternatives.append(ActivityRecordModel.action.startswith(action_prefix))
        if alternatives:
            query = query.where(or_(*alternatives))

        if start is not None:
            query = query.where(ActivityRecordModel.timestamp >= start)
        if end is not None:
            query = query.where(ActivityRecordModel.timestamp <= end)
        query = (
            query.order_by(ActivityRecordModel.timestamp.desc(), ActivityRecordModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def delete_older_than(self, cutoff: datetime, tenant_id: Optional[int] = None) -> int:
        stmt = delete(ActivityRecordModel).where(ActivityRecordModel.timestamp < cutoff)
        if tenant_id is not None:
            stmt = stmt.where(ActivityRecordModel.tenant_id == tenant_id)
        async with self.db.get_session() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0


class SqlAuditRowStore:
    """Relational ``audit_logs`` rows."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def insert_many(self, rows: list[dict[str, Any]]) -> None:
        async with self.db.get_session() as session:
            session.add_all([AuditLogModel(**row) for row in rows])

    async def find(
        self,
        tenant_id: int,
        user_id: Optional[int] = None,
        table_name: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditLogModel]:
        query = select(AuditLogModel).where(AuditLogModel.tenant_id == tenant_id)
        if user_id is not None:
            query = query.where(AuditLogModel.user_id == user_id)
        if table_name:
            query = query.where(AuditLogModel.table_name == table_name)
        query = query.order_by(AuditLogModel.created_at.desc(), AuditLogModel.id.desc()).limit(limit)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
