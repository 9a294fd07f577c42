"""
Resource family descriptions for the tenant-scoped accessor.

Why:
    Every tenant-owned table used to carry its own copy of "look up the school,
    then check the row belongs to it". A `ResourceSpec` states the facts once:
    which columns a client may write, which it may patch, how the row's
    ownership chain reaches a tenant, and which referenced rows must belong to
    the same tenant. The accessor and both repositories interpret these specs;
    no handler writes its own WHERE clause.

Ownership:
    - Direct: the table carries `tenant_id` (batches, trainers, students,
      coordinators).
    - Transitive: `owner_path` lists `(fk_column, parent_table)` hops from the
      row to a table that carries `tenant_id`. A session reaches its tenant via
      `batch_id -> batches`; a submission via `assignment_id ->
      trainer_assignments`, then `batch_id -> batches`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Tuple


TENANT_COLUMN = "tenant_id"


@dataclass(frozen=True)
class ResourceSpec:
    name: str
    table: str
    label: str
    columns: Tuple[str, ...]
    required: Tuple[str, ...] = ()
    patchable: Tuple[str, ...] = ()
    filters: Tuple[str, ...] = ()
    owner_path: Tuple[Tuple[str, str], ...] = ()
    references: Mapping[str, str] = field(default_factory=dict)
    unique: Tuple[Tuple[str, ...], ...] = ()
    defaults: Mapping[str, object] = field(default_factory=dict)
    order_by: str = "created_at"
    # Extra columns derived from the patch and the acting user (e.g. grading stamps).
    on_patch: Optional[Callable[[dict, str], dict]] = None

    @property
    def direct(self) -> bool:
        return not self.owner_path


def _grading_stamp(patch: dict, actor_id: str) -> dict:
    if "grade" in patch or "feedback" in patch:
        return {"graded_by": actor_id, "graded_at": datetime.now(timezone.utc)}
    return {}


_PROFILE = ("first_name", "last_name", "email", "phone", "status")

BATCHES = ResourceSpec(
    name="batches",
    table="batches",
    label="Batch",
    columns=("name", "status", "course_id", "start_date", "end_date", "max_students", "schedule", "description"),
    required=("name",),
    patchable=("name", "status", "course_id", "start_date", "end_date", "max_students", "schedule", "description"),
    filters=("status", "course_id"),
    defaults={"status": "pending"},
)

TRAINERS = ResourceSpec(
    name="trainers",
    table="trainers",
    label="Trainer",
    columns=_PROFILE + ("specialization", "experience_years", "bio"),
    required=("first_name",),
    patchable=_PROFILE + ("specialization", "experience_years", "bio"),
    filters=("status", "email"),
    unique=((TENANT_COLUMN, "external_user_id"),),
)

STUDENTS = ResourceSpec(
    name="students",
    table="students",
    label="Student",
    columns=_PROFILE + ("parent_phone", "address"),
    required=("first_name",),
    patchable=_PROFILE + ("parent_phone", "address"),
    filters=("status", "email"),
    unique=((TENANT_COLUMN, "external_user_id"),),
)

COORDINATORS = ResourceSpec(
    name="coordinators",
    table="coordinators",
    label="Coordinator",
    columns=_PROFILE + ("organization", "bio"),
    patchable=_PROFILE + ("organization", "bio"),
    filters=("email",),
    # At most one coordinator per tenant.
    unique=((TENANT_COLUMN,),),
)

COURSES = ResourceSpec(
    name="courses",
    table="courses",
    label="Course",
    columns=("title", "description", "status"),
    required=("title",),
    patchable=("title", "description", "status"),
    filters=("status",),
    defaults={"status": "draft"},
)

SESSIONS = ResourceSpec(
    name="sessions",
    table="class_sessions",
    label="Session",
    columns=("batch_id", "trainer_id", "title", "notes", "session_date", "session_time"),
    required=("batch_id", "trainer_id"),
    patchable=("batch_id", "trainer_id", "title", "notes", "session_date", "session_time"),
    filters=("batch_id", "trainer_id"),
    owner_path=(("batch_id", "batches"),),
    references={"batch_id": "batches", "trainer_id": "trainers"},
)

ASSIGNMENTS = ResourceSpec(
    name="assignments",
    table="trainer_assignments",
    label="Assignment",
    columns=("batch_id", "trainer_id", "title", "instructions", "due_date", "attachment_url"),
    required=("batch_id", "trainer_id", "title"),
    patchable=("batch_id", "trainer_id", "title", "instructions", "due_date", "attachment_url"),
    filters=("batch_id", "trainer_id"),
    owner_path=(("batch_id", "batches"),),
    references={"batch_id": "batches", "trainer_id": "trainers"},
)

SUBMISSIONS = ResourceSpec(
    name="submissions",
    table="submissions",
    label="Submission",
    columns=("assignment_id", "student_id", "content_url"),
    required=("assignment_id", "student_id"),
    patchable=("content_url", "grade", "feedback"),
    filters=("assignment_id", "student_id"),
    owner_path=(("assignment_id", "trainer_assignments"), ("batch_id", "batches")),
    references={"assignment_id": "assignments", "student_id": "students"},
    order_by="submitted_at",
    on_patch=_grading_stamp,
)

ANNOUNCEMENTS = ResourceSpec(
    name="announcements",
    table="batch_announcements",
    label="Announcement",
    columns=("batch_id", "trainer_id", "title", "body"),
    required=("batch_id", "trainer_id"),
    patchable=("title", "body"),
    filters=("batch_id", "trainer_id"),
    owner_path=(("batch_id", "batches"),),
    references={"batch_id": "batches", "trainer_id": "trainers"},
)

FAMILIES: Dict[str, ResourceSpec] = {
    spec.name: spec
    for spec in (
        BATCHES, TRAINERS, STUDENTS, COORDINATORS, COURSES,
        SESSIONS, ASSIGNMENTS, SUBMISSIONS, ANNOUNCEMENTS,
    )
}

# Families exposed through the uniform /api/{family} routes.
PUBLIC_FAMILIES = (
    "batches", "trainers", "students", "courses", "sessions", "assignments", "submissions", "announcements",
)

# Columns that are never client-writable, regardless of the ResourceSpec.
# `external_user_id` links a member to an identity and is set only by membership sync.
PROTECTED_COLUMNS = frozenset(
    {"id", TENANT_COLUMN, "created_at", "updated_at", "graded_at", "graded_by", "external_user_id"}
)


@dataclass(frozen=True)
class RelationSpec:
    """An activatable many-to-many link between a tenant-owned subject and a level."""

    name: str
    table: str
    subject_column: str
    subject_family: str


TRAINER_LEVELS = RelationSpec(
    name="trainer_levels",
    table="trainer_level_assignments",
    subject_column="trainer_id",
    subject_family="trainers",
)

BATCH_LEVELS = RelationSpec(
    name="batch_levels",
    table="batch_level_assignments",
    subject_column="batch_id",
    subject_family="batches",
)

# Leaf content kinds of a course section, in cascade order.
LEAF_TABLES: Dict[str, str] = {
    "lessons": "lessons",
    "quizzes": "quizzes",
    "assignments": "course_assignments",
}

LEAF_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "lessons": ("title", "description", "video_url", "duration_minutes"),
    "quizzes": ("title", "description", "pass_percentage"),
    "assignments": ("title", "instructions", "attachment_url", "max_score"),
}
