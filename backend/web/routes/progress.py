"""
Progress routes: lesson completions and quiz attempts.

The actor is named by `role` plus ids: `role=student` with `student_id` and
`batch_id`, or `role=trainer` with `trainer_id`.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from backend.tenancy.errors import Invalid
from backend.tenancy.progress import ActorKey

from .common import _json_private, read_context, services, write_context

progress_router = APIRouter(tags=["Progress"])


class _ActorPayload(BaseModel):
    role: Optional[str] = None
    student_id: Optional[str] = None
    batch_id: Optional[str] = None
    trainer_id: Optional[str] = None

    def actor(self) -> ActorKey:
        return ActorKey.build(
            self.role,
            student_id=self.student_id,
            batch_id=self.batch_id,
            trainer_id=self.trainer_id,
        )


class CompletionPayload(_ActorPayload):
    lesson_id: Optional[str] = None
    completed: bool = True


class AttemptPayload(_ActorPayload):
    quiz_id: Optional[str] = None
    score: Any = None
    max_score: Any = None


def _actor_from_query(role, student_id, batch_id, trainer_id) -> ActorKey:
    return ActorKey.build(role, student_id=student_id, batch_id=batch_id, trainer_id=trainer_id)


def _require(value: Optional[str], name: str) -> str:
    if not value:
        raise Invalid(f"{name} required")
    return value


@progress_router.get("/api/progress/lessons")
async def list_lesson_progress(
    request: Request,
    course_id: Optional[str] = None,
    role: Optional[str] = None,
    student_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    trainer_id: Optional[str] = None,
):
    ctx = read_context(request)
    actor = _actor_from_query(role, student_id, batch_id, trainer_id)
    ids = services().progress.list_completed_content_ids(ctx, _require(course_id, "course_id"), actor)
    return _json_private({"completed_lesson_ids": ids})


@progress_router.post("/api/progress/lessons")
async def record_lesson_progress(request: Request, payload: CompletionPayload):
    ctx = write_context(request)
    actor = payload.actor()
    row = services().progress.record_completion(ctx, _require(payload.lesson_id, "lesson_id"), actor, payload.completed)
    return _json_private(row)


@progress_router.get("/api/progress/quizzes")
async def list_quiz_progress(
    request: Request,
    course_id: Optional[str] = None,
    role: Optional[str] = None,
    student_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    trainer_id: Optional[str] = None,
    quiz_id: Optional[str] = None,
):
    ctx = read_context(request)
    actor = _actor_from_query(role, student_id, batch_id, trainer_id)
    rows = services().progress.latest_attempts(ctx, _require(course_id, "course_id"), actor, quiz_id)
    return _json_private(rows)


@progress_router.post("/api/progress/quizzes")
async def record_quiz_attempt(request: Request, payload: AttemptPayload):
    ctx = write_context(request)
    actor = payload.actor()
    row = services().progress.record_attempt(
        ctx, _require(payload.quiz_id, "quiz_id"), actor, payload.score, payload.max_score
    )
    return _json_private(row, status_code=201)
