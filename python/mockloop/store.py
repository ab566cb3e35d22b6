"""
Interview record store.

``InterviewStore`` is the persistence contract the lifecycle manager consumes.
Two implementations share one document model (each entity is a JSON-ready
dict keyed by kind and id):

    - ``InMemoryInterviewStore``: process-local dicts, used by tests and
      single-process development.
    - ``JsonFileInterviewStore``: one JSON file per entity under a data
      directory, written with aiofiles and atomically replaced.

Both return fresh model copies, so callers never alias stored state. Every
failure surfaces as ``StoreUnavailable``.
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Protocol

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ValidationError

from .cache import LEADERBOARD_PREFIX, USER_TTL_SECONDS, ReadThroughCache, user_key
from .errors import InterviewServiceError, StoreUnavailable
from .models import BillingEntry, Interview, InterviewStatus, ProblemAttempt, User


__all__ = [
    "InterviewStore",
    "DocumentStore",
    "InMemoryInterviewStore",
    "JsonFileInterviewStore",
    "mapped_store_errors",
]


logger = logging.getLogger(__name__)


USERS = "users"
INTERVIEWS = "interviews"
ATTEMPTS = "attempts"
BILLING = "billing"


@asynccontextmanager
async def mapped_store_errors(operation: str) -> AsyncIterator[None]:
    """
    Classify every store failure inside the block as ``StoreUnavailable``.

    Service errors raised deliberately inside the block pass through untouched.
    """
    try:
        yield
    except InterviewServiceError:
        raise
    except Exception as e:
        logger.error("Store failure during %s: %s", operation, e, exc_info=True)
        raise StoreUnavailable(f"Store failure during {operation}: {e}") from e


class InterviewStore(Protocol):
    """Persistence operations consumed by the interview core."""

    async def create_interview(self, interview: Interview) -> Interview: ...

    async def get_interview(self, interview_id: str) -> Optional[Interview]: ...

    async def update_interview(self, interview_id: str, **fields: Any) -> Interview: ...

    async def list_interviews(
        self,
        status: Optional[InterviewStatus] = None,
        created_before: Optional[datetime] = None,
    ) -> list[Interview]: ...

    async def create_user(self, user: User) -> User: ...

    async def get_user(self, user_id: str, fresh: bool = False) -> Optional[User]: ...

    async def get_user_tokens(self, user_id: str) -> int: ...

    async def set_user_tokens(self, user_id: str, balance: int) -> None: ...

    async def update_user(self, user_id: str, **fields: Any) -> User: ...

    async def list_top_users(self, limit: int) -> list[User]: ...

    async def upsert_problem_attempt(self, attempt: ProblemAttempt) -> ProblemAttempt: ...

    async def get_problem_attempt(self, attempt_id: str) -> Optional[ProblemAttempt]: ...

    async def add_billing_entry(self, entry: BillingEntry) -> BillingEntry: ...

    async def list_billing_history(self, user_id: str) -> list[BillingEntry]: ...

    async def invalidate_user_cache(self, user_id: str) -> None: ...


class DocumentStore(ABC):
    """
    Shared entity logic over a minimal document interface.

    Subclasses implement ``_read``, ``_write`` and ``_scan``; this class maps
    documents to models, validates updates against model invariants and owns
    the user read-through cache.
    """

    def __init__(self, cache: Optional[ReadThroughCache] = None) -> None:
        self.cache = cache

    # ------------------------------------------------------------------
    # Document primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _read(self, kind: str, entity_id: str) -> Optional[dict[str, Any]]:
        """Return the stored document or None."""

    @abstractmethod
    async def _write(self, kind: str, entity_id: str, document: dict[str, Any]) -> None:
        """Create or replace a document."""

    @abstractmethod
    async def _scan(self, kind: str) -> list[dict[str, Any]]:
        """Return every document of ``kind``."""

    async def _load(self, kind: str, entity_id: str, model: type[BaseModel]) -> Optional[Any]:
        document = await self._read(kind, entity_id)
        if document is None:
            return None
        try:
            return model.model_validate(document)
        except ValidationError as e:
            raise StoreUnavailable(f"Stored {kind} '{entity_id}' is corrupt: {e}") from e

    async def _save(self, kind: str, entity_id: str, entity: BaseModel) -> None:
        await self._write(kind, entity_id, entity.model_dump(mode="json"))

    async def _apply(
        self, kind: str, entity_id: str, model: type[BaseModel], fields: dict[str, Any]
    ) -> Any:
        current = await self._load(kind, entity_id, model)
        if current is None:
            raise KeyError(f"{kind} '{entity_id}' does not exist")
        try:
            updated = model.model_validate({**current.model_dump(), **fields})
        except ValidationError as e:
            raise ValueError(f"Invalid update for {kind} '{entity_id}': {e}") from e
        await self._save(kind, entity_id, updated)
        return updated

    # ------------------------------------------------------------------
    # Interviews
    # ------------------------------------------------------------------

    async def create_interview(self, interview: Interview) -> Interview:
        if await self._read(INTERVIEWS, interview.id) is not None:
            raise ValueError(f"Interview '{interview.id}' already exists")
        await self._save(INTERVIEWS, interview.id, interview)
        return interview.model_copy(deep=True)

    async def get_interview(self, interview_id: str) -> Optional[Interview]:
        return await self._load(INTERVIEWS, interview_id, Interview)

    async def update_interview(self, interview_id: str, **fields: Any) -> Interview:
        return await self._apply(INTERVIEWS, interview_id, Interview, fields)

    async def list_interviews(
        self,
        status: Optional[InterviewStatus] = None,
        created_before: Optional[datetime] = None,
    ) -> list[Interview]:
        interviews = []
        for document in await self._scan(INTERVIEWS):
            try:
                interview = Interview.model_validate(document)
            except ValidationError as e:
                logger.warning("Skipping corrupt interview document: %s", e)
                continue
            if status is not None and interview.status != status:
                continue
            if created_before is not None and interview.created_at >= created_before:
                continue
            interviews.append(interview)
        return sorted(interviews, key=lambda i: i.created_at)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(self, user: User) -> User:
        await self._save(USERS, user.id, user)
        await self.invalidate_user_cache(user.id)
        return user.model_copy(deep=True)

    async def get_user(self, user_id: str, fresh: bool = False) -> Optional[User]:
        """Read a user through the cache; ``fresh`` bypasses it for read-modify-write."""
        if self.cache is None or fresh:
            return await self._load(USERS, user_id, User)

        async def _loader() -> Optional[User]:
            return await self._load(USERS, user_id, User)

        user = await self.cache.get_or_load(user_key(user_id), _loader, USER_TTL_SECONDS)
        return user.model_copy(deep=True) if user is not None else None

    async def get_user_tokens(self, user_id: str) -> int:
        """Authoritative balance read. Never served from the cache."""
        user = await self._load(USERS, user_id, User)
        if user is None:
            raise KeyError(f"User '{user_id}' does not exist")
        return user.tokens

    async def set_user_tokens(self, user_id: str, balance: int) -> None:
        await self._apply(USERS, user_id, User, {"tokens": balance})

    async def update_user(self, user_id: str, **fields: Any) -> User:
        return await self._apply(USERS, user_id, User, fields)

    async def list_top_users(self, limit: int) -> list[User]:
        users = [User.model_validate(document) for document in await self._scan(USERS)]
        users.sort(key=lambda u: (-u.xp, u.created_at))
        return users[:limit]

    async def invalidate_user_cache(self, user_id: str) -> None:
        if self.cache is None:
            return
        self.cache.invalidate(user_key(user_id))
        self.cache.invalidate_prefix(LEADERBOARD_PREFIX)

    # ------------------------------------------------------------------
    # Problem attempts
    # ------------------------------------------------------------------

    async def upsert_problem_attempt(self, attempt: ProblemAttempt) -> ProblemAttempt:
        await self._save(ATTEMPTS, attempt.id, attempt)
        return attempt.model_copy(deep=True)

    async def get_problem_attempt(self, attempt_id: str) -> Optional[ProblemAttempt]:
        return await self._load(ATTEMPTS, attempt_id, ProblemAttempt)

    # ------------------------------------------------------------------
    # Billing history
    # ------------------------------------------------------------------

    async def add_billing_entry(self, entry: BillingEntry) -> BillingEntry:
        if await self._read(BILLING, entry.id) is not None:
            raise ValueError(f"Billing entry '{entry.id}' already exists")
        await self._save(BILLING, entry.id, entry)
        return entry.model_copy(deep=True)

    async def list_billing_history(self, user_id: str) -> list[BillingEntry]:
        """A user's billing entries, oldest first."""
        entries = [BillingEntry.model_validate(document) for document in await self._scan(BILLING)]
        return sorted((e for e in entries if e.user_id == user_id), key=lambda e: e.created_at)


class InMemoryInterviewStore(DocumentStore):
    """Dict-backed store. Documents are stored as JSON-ready dicts."""

    def __init__(self, cache: Optional[ReadThroughCache] = None) -> None:
        super().__init__(cache)
        self._documents: dict[str, dict[str, dict[str, Any]]] = {
            USERS: {},
            INTERVIEWS: {},
            ATTEMPTS: {},
            BILLING: {},
        }

    async def _read(self, kind: str, entity_id: str) -> Optional[dict[str, Any]]:
        document = self._documents[kind].get(entity_id)
        return json.loads(json.dumps(document)) if document is not None else None

    async def _write(self, kind: str, entity_id: str, document: dict[str, Any]) -> None:
        self._documents[kind][entity_id] = document

    async def _scan(self, kind: str) -> list[dict[str, Any]]:
        return [json.loads(json.dumps(document)) for document in self._documents[kind].values()]


class JsonFileInterviewStore(DocumentStore):
    """
    Stores each entity as ``{data_dir}/{kind}/{id}.json``.

    Writes go to a temporary file that is then atomically renamed over the
    target, so a crash never leaves a half-written document. Read-modify-write
    sequences are not locked here; the lifecycle manager serializes them per
    user.
    """

    def __init__(self, data_dir: Path, cache: Optional[ReadThroughCache] = None) -> None:
        super().__init__(cache)
        self.data_dir = Path(data_dir)
        try:
            for kind in (USERS, INTERVIEWS, ATTEMPTS, BILLING):
                (self.data_dir / kind).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create data directory {self.data_dir}: {e}") from e
        logger.info("JSON store ready at %s", self.data_dir)

    def _path(self, kind: str, entity_id: str) -> Path:
        safe_id = entity_id.replace(os.sep, "_")
        return self.data_dir / kind / f"{safe_id}.json"

    async def _read(self, kind: str, entity_id: str) -> Optional[dict[str, Any]]:
        path = self._path(kind, entity_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return json.loads(await f.read())
        except json.JSONDecodeError as e:
            raise StoreUnavailable(f"Failed to parse {path}: {e}") from e
        except OSError as e:
            raise StoreUnavailable(f"Failed to read {path}: {e}") from e

    async def _write(self, kind: str, entity_id: str, document: dict[str, Any]) -> None:
        path = self._path(kind, entity_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(document, indent=2, ensure_ascii=False))
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            raise StoreUnavailable(f"Failed to write {path}: {e}") from e

    async def _scan(self, kind: str) -> list[dict[str, Any]]:
        documents = []
        for path in sorted((self.data_dir / kind).glob("*.json")):
            try:
                async with aiofiles.open(path, "r", encoding="utf-8") as f:
                    documents.append(json.loads(await f.read()))
            except (OSError, json.JSONDecodeError) as e:
                raise StoreUnavailable(f"Failed to read {path}: {e}") from e
        return documents
