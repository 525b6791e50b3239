"""Idempotency store: one submission record per ``request_id``.

Two backends share the ``SubmissionStore`` interface. ``JsonFileSubmissionStore``
keeps a JSON array on disk and swaps it atomically on every write;
``SqlSubmissionStore`` relies on a unique index in a SQLModel table. Both
serialize writes through a single ``asyncio.Lock`` so concurrent requests never
race on a read-modify-write cycle, and both run blocking I/O in worker threads.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from contact_api.core.config import Settings
from contact_api.core.errors import PersistenceError
from contact_api.db.session import get_session, init_db, make_engine
from contact_api.models import Submission, SubmissionRow, SubmissionStatus
from contact_api.models.submission import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

PATCHABLE_FIELDS = {"status", "channel", "external_id", "error"}


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace ``path`` with ``payload`` through a fsynced temp file in the same directory."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def merge_patch(current: Submission, patch: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return the field updates for ``patch``, or ``None`` if it must be refused.

    A ``sent`` record is settled: it keeps its status and ignores the whole
    patch. ``pending`` and ``failed`` records can still be redelivered.
    """

    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported submission fields: {sorted(unknown)}")

    status = patch.get("status")
    if status is not None:
        status = SubmissionStatus(status)
        if current.status == SubmissionStatus.sent and status != current.status:
            logger.warning(
                "Refusing status change %s -> %s for %s",
                current.status.value,
                status.value,
                current.request_id,
            )
            return None

    update = dict(patch)
    if status is not None:
        update["status"] = status
    update["updated_at"] = utcnow()
    return update


class SubmissionStore(ABC):
    """Interface every backing store honors."""

    @abstractmethod
    async def get_or_create(
        self,
        request_id: str,
        fields: Mapping[str, str],
        meta: Mapping[str, str | None] | None = None,
    ) -> tuple[Submission, bool]:
        """Return ``(record, created)``; an existing record comes back unchanged."""

    @abstractmethod
    async def update_status(self, request_id: str, patch: Mapping[str, Any]) -> Submission | None:
        """Merge ``patch`` into the record; ``None`` when the id is unknown."""

    @abstractmethod
    async def get(self, request_id: str) -> Submission | None:
        ...

    @abstractmethod
    async def list_all(self) -> list[Submission]:
        ...

    async def close(self) -> None:
        return None


class JsonFileSubmissionStore(SubmissionStore):
    """Submissions kept as a JSON array, replaced atomically on every write."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._records: dict[str, Submission] | None = None

    async def get_or_create(self, request_id, fields, meta=None):
        async with self._lock:
            records = await self._load_locked()
            existing = records.get(request_id)
            if existing is not None:
                logger.info("Submission %s already exists (status=%s)", request_id, existing.status.value)
                return existing, False

            submission = Submission(request_id=request_id, **fields, **(meta or {}))
            updated = dict(records)
            updated[request_id] = submission
            await self._commit(updated)
            logger.info("Created submission %s", request_id)
            return submission, True

    async def update_status(self, request_id, patch):
        async with self._lock:
            records = await self._load_locked()
            current = records.get(request_id)
            if current is None:
                logger.warning("Status update for unknown submission %s ignored", request_id)
                return None

            update = merge_patch(current, patch)
            if update is None:
                return current

            updated = dict(records)
            updated[request_id] = current.model_copy(update=update)
            await self._commit(updated)
            return updated[request_id]

    async def get(self, request_id):
        records = await self._snapshot()
        return records.get(request_id)

    async def list_all(self):
        records = await self._snapshot()
        return list(records.values())

    async def _snapshot(self) -> dict[str, Submission]:
        if self._records is None:
            async with self._lock:
                await self._load_locked()
        return self._records or {}

    async def _load_locked(self) -> dict[str, Submission]:
        if self._records is None:
            self._records = await asyncio.to_thread(self._read_file)
        return self._records

    async def _commit(self, records: dict[str, Submission]) -> None:
        payload = [record.model_dump(mode="json") for record in records.values()]
        try:
            await asyncio.to_thread(self._write_file, payload)
        except OSError as exc:
            logger.error("Failed to write submission store %s: %s", self.path, exc, exc_info=True)
            raise PersistenceError() from exc
        self._records = records

    def _read_file(self) -> dict[str, Submission]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            records = [Submission.model_validate(item) for item in raw]
        except (OSError, ValueError, TypeError) as exc:
            logger.error("Submission store %s is unreadable: %s", self.path, exc)
            raise PersistenceError("Submission store is unreadable") from exc
        return {record.request_id: record for record in records}

    def _write_file(self, payload: list[dict[str, Any]]) -> None:
        write_json_atomic(self.path, payload)


class SqlSubmissionStore(SubmissionStore):
    """Submissions in a SQL table with a unique ``request_id`` index."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._lock = asyncio.Lock()
        init_db(engine)

    async def get_or_create(self, request_id, fields, meta=None):
        async with self._lock:
            return await self._run(self._get_or_create_sync, request_id, dict(fields), dict(meta or {}))

    async def update_status(self, request_id, patch):
        async with self._lock:
            return await self._run(self._update_status_sync, request_id, dict(patch))

    async def get(self, request_id):
        return await self._run(self._get_sync, request_id)

    async def list_all(self):
        return await self._run(self._list_sync)

    async def close(self) -> None:
        self.engine.dispose()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            logger.error("Submission table operation failed: %s", exc, exc_info=True)
            raise PersistenceError() from exc

    @staticmethod
    def _find(session: Session, request_id: str) -> SubmissionRow | None:
        stmt = select(SubmissionRow).where(SubmissionRow.request_id == request_id)
        return session.exec(stmt).first()

    @staticmethod
    def _to_submission(row: SubmissionRow) -> Submission:
        return Submission.model_validate(row.model_dump(exclude={"id"}))

    def _get_or_create_sync(self, request_id: str, fields: dict, meta: dict) -> tuple[Submission, bool]:
        with get_session(self.engine) as session:
            row = self._find(session, request_id)
            if row is not None:
                return self._to_submission(row), False

            row = SubmissionRow(request_id=request_id, **fields, **meta)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # Another process inserted the same request_id first
                session.rollback()
                row = self._find(session, request_id)
                if row is None:
                    raise
                return self._to_submission(row), False
            session.refresh(row)
            logger.info("Created submission %s", request_id)
            return self._to_submission(row), True

    def _update_status_sync(self, request_id: str, patch: dict) -> Submission | None:
        with get_session(self.engine) as session:
            row = self._find(session, request_id)
            if row is None:
                logger.warning("Status update for unknown submission %s ignored", request_id)
                return None
            update = merge_patch(self._to_submission(row), patch)
            if update is None:
                return self._to_submission(row)
            for key, value in update.items():
                setattr(row, key, value)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_submission(row)

    def _get_sync(self, request_id: str) -> Submission | None:
        with get_session(self.engine) as session:
            row = self._find(session, request_id)
            return self._to_submission(row) if row is not None else None

    def _list_sync(self) -> list[Submission]:
        with get_session(self.engine) as session:
            rows = session.exec(select(SubmissionRow).order_by(SubmissionRow.created_at)).all()
            return [self._to_submission(row) for row in rows]


def build_store(settings: Settings) -> SubmissionStore:
    if settings.store_backend == "sql":
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        return SqlSubmissionStore(make_engine(settings.database_url))
    return JsonFileSubmissionStore(settings.submissions_path)


__all__ = [
    "build_store",
    "JsonFileSubmissionStore",
    "SqlSubmissionStore",
    "SubmissionStore",
    "merge_patch",
    "write_json_atomic",
]
