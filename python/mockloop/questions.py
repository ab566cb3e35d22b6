"""
Question pool and per-user question rotation.

The pool is a JSON object keyed by question id. Selection avoids the user's
last ``MAX_RECENT_QUESTIONS`` picks; when that leaves nothing for the
difficulty, it falls back to the whole difficulty pool and accepts a repeat.
"""

from __future__ import annotations

import json
import logging
import random
from pathlib import Path
from typing import Any, Optional

import aiofiles
from pydantic import BaseModel, Field, ValidationError

from .cache import QUESTION_POOL_KEY, QUESTION_POOL_TTL_SECONDS, ReadThroughCache
from .errors import QuestionPoolEmpty, StoreUnavailable, UserNotFound
from .locks import KeyedLocks
from .models import MAX_RECENT_QUESTIONS
from .store import InterviewStore, mapped_store_errors


__all__ = ["Question", "QuestionBank", "QuestionRotation", "normalize_difficulty"]


logger = logging.getLogger(__name__)


DEFAULT_POOL_PATH = Path(__file__).parent / "data" / "questions.json"

DIFFICULTIES = ("Easy", "Medium", "Hard")


class Question(BaseModel):
    """A coding problem from the pool."""

    id: str
    title: str
    content: str
    difficulty: str
    hints: list[str] = Field(default_factory=list)
    topic_tags: list[str] = Field(default_factory=list, alias="topicTags")
    in_place: bool = Field(default=False, alias="in-place")
    test_cases: list[dict[str, Any]] = Field(default_factory=list, alias="testCases")

    model_config = {"populate_by_name": True}

    def describe(self) -> str:
        """Problem text handed to the technical agent."""
        lines = [f"{self.title} ({self.difficulty})", "", self.content]
        if self.test_cases:
            lines.append("")
            lines.append("Examples:")
            for case in self.test_cases[:2]:
                lines.append(f"- {json.dumps(case)}")
        return "\n".join(lines)


def normalize_difficulty(difficulty: str) -> str:
    """'EASY' / 'easy' / ' Easy ' -> 'Easy'."""
    value = (difficulty or "").strip()
    if not value:
        return value
    return value[0].upper() + value[1:].lower()


class QuestionBank:
    """Loads the question pool from JSON through the read-through cache."""

    def __init__(self, pool_path: Path = DEFAULT_POOL_PATH, cache: Optional[ReadThroughCache] = None) -> None:
        self.pool_path = Path(pool_path)
        self.cache = cache or ReadThroughCache()

    async def _load_pool(self) -> dict[str, Question]:
        try:
            async with aiofiles.open(self.pool_path, "r", encoding="utf-8") as f:
                raw = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailable(f"Failed to load question pool {self.pool_path}: {e}") from e

        pool: dict[str, Question] = {}
        for question_id, body in raw.items():
            try:
                pool[question_id] = Question.model_validate({**body, "id": question_id})
            except ValidationError as e:
                logger.warning("Skipping malformed question %s: %s", question_id, e)
        logger.info("Loaded %d questions from %s", len(pool), self.pool_path)
        return pool

    async def pool(self) -> dict[str, Question]:
        return await self.cache.get_or_load(QUESTION_POOL_KEY, self._load_pool, QUESTION_POOL_TTL_SECONDS)

    async def by_difficulty(self, difficulty: str) -> list[Question]:
        wanted = normalize_difficulty(difficulty)
        pool = await self.pool()
        return [q for q in pool.values() if q.difficulty == wanted]

    async def get(self, question_id: str) -> Optional[Question]:
        return (await self.pool()).get(question_id)


def choose_question(
    candidates: list[Question],
    recent_ids: list[str],
    rng: random.Random,
) -> Question:
    """
    Pick uniformly among ``candidates`` not in ``recent_ids``.

    Falls back to all ``candidates`` when every one was seen recently.
    """
    recent = set(recent_ids)
    fresh = [q for q in candidates if q.id not in recent]
    return rng.choice(fresh or candidates)


def push_recent(recent_ids: list[str], question_id: str, limit: int = MAX_RECENT_QUESTIONS) -> list[str]:
    """Move ``question_id`` to the front of the recent list and truncate it."""
    return [question_id, *[qid for qid in recent_ids if qid != question_id]][:limit]


class QuestionRotation:
    """Selects non-repeating questions and records each selection on the user."""

    def __init__(
        self,
        bank: QuestionBank,
        store: InterviewStore,
        locks: Optional[KeyedLocks] = None,
        rng: Optional[random.Random] = None,
        window: int = MAX_RECENT_QUESTIONS,
    ) -> None:
        self.bank = bank
        self.store = store
        self.locks = locks or KeyedLocks()
        self.rng = rng or random.Random()
        self.window = window

    async def next_question(self, user_id: str, difficulty: str) -> Question:
        """
        Select a question for ``user_id`` and persist it to their recent list.

        Raises:
            QuestionPoolEmpty: If the pool has no question of ``difficulty``.
            UserNotFound: If the user does not exist.
        """
        candidates = await self.bank.by_difficulty(difficulty)
        if not candidates:
            raise QuestionPoolEmpty(difficulty)

        async with self.locks.hold(user_id), mapped_store_errors("question rotation"):
            user = await self.store.get_user(user_id, fresh=True)
            if user is None:
                raise UserNotFound(user_id)

            recent = user.recent_question_ids[: self.window]
            question = choose_question(candidates, recent, self.rng)
            if question.id in recent:
                logger.info(
                    "All %d %s questions seen recently by %s; repeating %s",
                    len(candidates),
                    normalize_difficulty(difficulty),
                    user_id,
                    question.id,
                )

            await self.store.update_user(
                user_id,
                recent_question_ids=push_recent(recent, question.id, self.window),
            )
            await self.store.invalidate_user_cache(user_id)

        logger.info("Selected question %s (%s) for %s", question.id, question.difficulty, user_id)
        return question
