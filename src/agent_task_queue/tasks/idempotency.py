"""Idempotency ledger: caches operation results by client-supplied key."""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from agent_task_queue.storage.common import now_ms
from agent_task_queue.storage.sqlmodel_models import IdempotencyKeyRow
from agent_task_queue.tasks.errors import StorageError
from agent_task_queue.tasks.models import IdempotencyRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24
MAX_KEY_LENGTH = 255
_KEY_PATTERN = re.compile(r"[a-zA-Z0-9_.-]+")
_MS_PER_HOUR = 3_600_000


class IdempotencyLedger:
    """Durable key -> result records with a TTL."""

    def __init__(self, engine: Engine, *, ttl_hours: int = DEFAULT_TTL_HOURS) -> None:
        self.engine = engine
        self.ttl_hours = ttl_hours
        self._processed_keys: set[str] = set()
        self._processed_lock = threading.Lock()

    def lookup(self, key: str | None) -> IdempotencyRecord | None:
        """Return the live record for `key`; expired or unreadable records count as misses."""

        if not key:
            return None
        try:
            with Session(self.engine) as session:
                row = session.get(IdempotencyKeyRow, key)
                if row is None:
                    return None
                record = IdempotencyRecord(
                    key=row.key,
                    result=json.loads(row.result_json),
                    operation_type=row.operation_type,
                    created_at=row.created_at,
                    expires_at=row.expires_at,
                )
        except (SQLAlchemyError, ValueError):
            logger.exception("Idempotency lookup failed for key %s", key)
            return None

        if record.is_expired():
            self._delete(key)
            return None
        return record

    def store(
        self,
        key: str | None,
        result: Any,
        operation_type: str,
        ttl_hours: int | None = None,
    ) -> None:
        """Write or overwrite the record for `key`."""

        if not key:
            logger.warning("Ignoring empty idempotency key (operation=%s)", operation_type)
            return
        now = now_ms()
        hours = ttl_hours if ttl_hours is not None else self.ttl_hours
        try:
            with Session(self.engine) as session:
                row = session.get(IdempotencyKeyRow, key)
                if row is None:
                    row = IdempotencyKeyRow(
                        key=key,
                        operation_type=operation_type,
                        created_at=now,
                        expires_at=now,
                    )
                row.result_json = json.dumps(result, ensure_ascii=False, sort_keys=True)
                row.operation_type = operation_type
                row.created_at = now
                row.expires_at = now + hours * _MS_PER_HOUR
                session.add(row)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to store idempotency key {key}: {exc}") from exc

        with self._processed_lock:
            self._processed_keys.add(key)
        logger.debug("Stored idempotency key %s for %s (ttl=%sh)", key, operation_type, hours)

    def sweep_expired(self) -> int:
        """Delete every expired record, returning how many were removed."""

        now = now_ms()
        try:
            with Session(self.engine) as session:
                keys = session.exec(
                    select(IdempotencyKeyRow.key).where(col(IdempotencyKeyRow.expires_at) < now),
                ).all()
        except SQLAlchemyError:
            logger.exception("Failed to list expired idempotency keys")
            return 0

        deleted = 0
        for key in keys:
            if self._delete(key):
                deleted += 1
        if deleted:
            with self._processed_lock:
                self._processed_keys.difference_update(keys)
            logger.info("Swept %d expired idempotency keys", deleted)
        return deleted

    def processed_key_count(self) -> int:
        with self._processed_lock:
            return len(self._processed_keys)

    def _delete(self, key: str) -> bool:
        try:
            with Session(self.engine) as session:
                row = session.get(IdempotencyKeyRow, key)
                if row is None:
                    return False
                session.delete(row)
                session.commit()
                return True
        except SQLAlchemyError:
            logger.exception("Failed to delete idempotency key %s", key)
            return False

    @staticmethod
    def is_valid_key(key: str | None) -> bool:
        if not key or len(key) > MAX_KEY_LENGTH:
            return False
        return _KEY_PATTERN.fullmatch(key) is not None

    @staticmethod
    def generate_key(operation_type: str, entity_id: str, context: str | None = None) -> str:
        parts = [operation_type, entity_id]
        if context:
            parts.append(context)
        parts.append(str(now_ms()))
        return "_".join(parts)
