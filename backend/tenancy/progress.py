"""
Progress ledger: lesson completions and quiz attempts.

Actor key:
    Progress is recorded for exactly one of two kinds of actor, a student
    within a batch (`student_id` + `batch_id`) or a trainer (`trainer_id`).
    Supplying ids of both kinds is rejected.

Semantics:
    - Completions are upserted per (lesson, actor key): one current row,
      `completed_at` set when completed and cleared otherwise.
    - Quiz attempts are append-only; "latest" is derived per quiz by
      attempt time.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .accessor import AccessorRegistry
from .context import RequestContext
from .errors import Invalid
from .structure import CourseStructure


class ProgressRepoProtocol(Protocol):
    def upsert_completion(self, *, lesson_id: str, course_id: str, actor: Mapping[str, Any], completed: bool) -> dict:
        ...

    def insert_attempt(self, *, quiz_id: str, course_id: str, actor: Mapping[str, Any], score: float, max_score: float) -> dict:
        ...

    def list_completed(self, course_id: str, actor: Mapping[str, Any]) -> List[str]:
        ...

    def latest_attempts(self, course_id: str, actor: Mapping[str, Any], quiz_id: Optional[str] = None) -> List[dict]:
        ...


@dataclass(frozen=True)
class ActorKey:
    student_id: Optional[str] = None
    batch_id: Optional[str] = None
    trainer_id: Optional[str] = None

    @classmethod
    def build(
        cls,
        role: Optional[str],
        *,
        student_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        trainer_id: Optional[str] = None,
    ) -> "ActorKey":
        if role == "student":
            if trainer_id:
                raise Invalid("trainer_id not allowed for role=student")
            if not student_id or not batch_id:
                raise Invalid("student_id and batch_id required for role=student")
            return cls(student_id=str(student_id), batch_id=str(batch_id))
        if role == "trainer":
            if student_id or batch_id:
                raise Invalid("student_id and batch_id not allowed for role=trainer")
            if not trainer_id:
                raise Invalid("trainer_id required for role=trainer")
            return cls(trainer_id=str(trainer_id))
        raise Invalid("role must be 'student' or 'trainer'")

    @property
    def role(self) -> str:
        return "trainer" if self.trainer_id else "student"

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"student_id": self.student_id, "batch_id": self.batch_id, "trainer_id": self.trainer_id}


def _number(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise Invalid(f"{field} must be a number")
    if value < 0:
        raise Invalid(f"{field} must not be negative")
    return value


class ProgressLedger:
    def __init__(self, repo: ProgressRepoProtocol, registry: AccessorRegistry, structure: CourseStructure) -> None:
        self._repo = repo
        self._registry = registry
        self._structure = structure

    def _verify_actor(self, ctx: RequestContext, actor: ActorKey) -> None:
        if actor.trainer_id:
            self._registry.get("trainers").require_owned(ctx.tenant_id, actor.trainer_id)
            return
        self._registry.get("students").require_owned(ctx.tenant_id, actor.student_id)
        self._registry.get("batches").require_owned(ctx.tenant_id, actor.batch_id)

    def record_completion(self, ctx: RequestContext, lesson_id: str, actor: ActorKey, completed: bool = True) -> dict:
        lesson = self._structure.get_leaf(ctx, "lessons", lesson_id)
        self._verify_actor(ctx, actor)
        return self._repo.upsert_completion(
            lesson_id=lesson_id,
            course_id=str(lesson["course_id"]),
            actor=actor.as_dict(),
            completed=bool(completed),
        )

    def record_attempt(self, ctx: RequestContext, quiz_id: str, actor: ActorKey, score: Any, max_score: Any) -> dict:
        quiz = self._structure.get_leaf(ctx, "quizzes", quiz_id)
        score, max_score = _number(score, "score"), _number(max_score, "max_score")
        if score > max_score:
            raise Invalid("score must not exceed max_score")
        self._verify_actor(ctx, actor)
        return self._repo.insert_attempt(
            quiz_id=quiz_id,
            course_id=str(quiz["course_id"]),
            actor=actor.as_dict(),
            score=score,
            max_score=max_score,
        )

    def list_completed_content_ids(self, ctx: RequestContext, course_id: str, actor: ActorKey) -> List[str]:
        self._registry.get("courses").require_owned(ctx.tenant_id, course_id)
        self._verify_actor(ctx, actor)
        return self._repo.list_completed(course_id, actor.as_dict())

    def latest_attempts(
        self,
        ctx: RequestContext,
        course_id: str,
        actor: ActorKey,
        quiz_id: Optional[str] = None,
    ) -> List[dict]:
        self._registry.get("courses").require_owned(ctx.tenant_id, course_id)
        self._verify_actor(ctx, actor)
        return self._repo.latest_attempts(course_id, actor.as_dict(), quiz_id)

    def latest_attempt(self, ctx: RequestContext, course_id: str, actor: ActorKey, quiz_id: Optional[str] = None) -> Optional[dict]:
        """Most recent attempt for `quiz_id`, or across the course when omitted."""
        rows = self.latest_attempts(ctx, course_id, actor, quiz_id)
        if not rows:
            return None
        return max(rows, key=lambda r: r["attempted_at"])


__all__ = ["ProgressLedger", "ActorKey", "ProgressRepoProtocol"]
