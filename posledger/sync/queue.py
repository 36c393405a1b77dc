"""Durable FIFO of mutations made while the terminal could not reach the server.

Lives in its own local SQLite file, separate from the server schema. Order is
the autoincrement ``seq``; an item is removed only once the server has
acknowledged it or rejected it for good.
"""
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, func, select, delete
from sqlalchemy.orm import declarative_base, sessionmaker

from ..db import make_engine
from ..models import utcnow

LocalBase = declarative_base()


class MutationType:
    CREATE_ORDER = "create_order"
    ADD_ITEM = "add_item"
    UPDATE_ITEM = "update_item"
    REMOVE_ITEM = "remove_item"
    SUBMIT_ORDER = "submit_order"
    KITCHEN_STATUS = "kitchen_status"
    RECORD_PAYMENT = "record_payment"
    CHECKOUT = "checkout"
    CANCEL_ORDER = "cancel_order"

    ALL = frozenset({
        CREATE_ORDER, ADD_ITEM, UPDATE_ITEM, REMOVE_ITEM, SUBMIT_ORDER,
        KITCHEN_STATUS, RECORD_PAYMENT, CHECKOUT, CANCEL_ORDER,
    })


class QueuedMutation(LocalBase):
    __tablename__ = "queued_mutations"
    seq = Column(Integer, primary_key=True, autoincrement=True)
    client_request_id = Column(String(64), unique=True, nullable=False)
    mutation_type = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_attempt_at = Column(DateTime)


class LocalIdMap(LocalBase):
    __tablename__ = "local_id_map"
    local_id = Column(String(64), primary_key=True)
    server_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class SyncConflict(LocalBase):
    __tablename__ = "sync_conflicts"
    id = Column(Integer, primary_key=True)
    client_request_id = Column(String(64), nullable=False)
    mutation_type = Column(String(32), nullable=False)
    payload = Column(JSON, nullable=False)
    status_code = Column(Integer)
    code = Column(String(64))
    message = Column(Text)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class OfflineQueue:
    def __init__(self, url: str = "sqlite:///./posledger-offline.db"):
        self.engine = make_engine(url)
        LocalBase.metadata.create_all(bind=self.engine)
        self._session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def enqueue(self, mutation_type: str, payload: Dict[str, Any],
                client_request_id: Optional[str] = None) -> QueuedMutation:
        if mutation_type not in MutationType.ALL:
            raise ValueError(f"unknown mutation type: {mutation_type}")
        item = QueuedMutation(
            client_request_id=client_request_id or uuid.uuid4().hex,
            mutation_type=mutation_type,
            payload=dict(payload),
        )
        with self._session() as s:
            s.add(item)
            s.commit()
        return item

    def peek(self) -> Optional[QueuedMutation]:
        with self._session() as s:
            item = s.execute(select(QueuedMutation).order_by(QueuedMutation.seq).limit(1)).scalar_one_or_none()
            s.commit()
            return item

    def pending(self) -> List[QueuedMutation]:
        with self._session() as s:
            items = s.execute(select(QueuedMutation).order_by(QueuedMutation.seq)).scalars().all()
            s.commit()
            return items

    def __len__(self) -> int:
        with self._session() as s:
            n = s.scalar(select(func.count()).select_from(QueuedMutation))
            s.commit()
            return n or 0

    def remove(self, seq: int) -> None:
        with self._session() as s:
            s.execute(delete(QueuedMutation).where(QueuedMutation.seq == seq))
            s.commit()

    def record_attempt(self, seq: int, error: str) -> None:
        with self._session() as s:
            item = s.get(QueuedMutation, seq)
            if item is not None:
                item.attempts = (item.attempts or 0) + 1
                item.last_error = error[:500]
                item.last_attempt_at = utcnow()
            s.commit()

    def reject(self, item: QueuedMutation, status_code: Optional[int], code: Optional[str],
               message: str) -> SyncConflict:
        """Move a permanently failed mutation out of the queue into ``sync_conflicts``."""
        conflict = SyncConflict(client_request_id=item.client_request_id, mutation_type=item.mutation_type,
                                payload=item.payload, status_code=status_code, code=code, message=message)
        with self._session() as s:
            s.add(conflict)
            s.execute(delete(QueuedMutation).where(QueuedMutation.seq == item.seq))
            s.commit()
        return conflict

    def conflicts(self, include_resolved: bool = False) -> List[SyncConflict]:
        with self._session() as s:
            stmt = select(SyncConflict).order_by(SyncConflict.id)
            if not include_resolved:
                stmt = stmt.where(SyncConflict.resolved.is_(False))
            rows = s.execute(stmt).scalars().all()
            s.commit()
            return rows

    def resolve_conflict(self, conflict_id: int) -> None:
        with self._session() as s:
            row = s.get(SyncConflict, conflict_id)
            if row is not None:
                row.resolved = True
            s.commit()

    def map_local_id(self, local_id: str, server_id: int) -> None:
        with self._session() as s:
            row = s.get(LocalIdMap, str(local_id))
            if row is None:
                s.add(LocalIdMap(local_id=str(local_id), server_id=server_id))
            else:
                row.server_id = server_id
            s.commit()

    def server_id_for(self, local_id: str) -> Optional[int]:
        with self._session() as s:
            row = s.get(LocalIdMap, str(local_id))
            s.commit()
            return row.server_id if row else None
