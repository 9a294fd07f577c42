"""
Course structure routes: sections and their lessons, quizzes and assignments.

Section and leaf mutations are coordinator-only. Deleting a section removes
its leaf content in the same transaction; on failure nothing is removed and
the response is a single 500. Reorder routes take the full list of sibling
ids in their new order.

Leaves are addressed as `/api/content/{kind}/{id}` with `kind` one of
`lessons`, `quizzes` or `assignments`.
"""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Body, Request
from pydantic import BaseModel

from .common import _json_private, read_context, services, write_context

content_router = APIRouter(tags=["Content"])


class SectionCreatePayload(BaseModel):
    title: Any = None


class OrderPayload(BaseModel):
    ids: Any = None


@content_router.get("/api/courses/{course_id}/sections")
async def list_sections(request: Request, course_id: str):
    ctx = read_context(request)
    return _json_private(services().structure.list_sections(ctx, course_id))


@content_router.post("/api/courses/{course_id}/sections")
async def create_section(request: Request, course_id: str, payload: SectionCreatePayload):
    ctx = write_context(request)
    return _json_private(services().structure.create_section(ctx, course_id, payload.title), status_code=201)


@content_router.put("/api/courses/{course_id}/sections/order")
async def reorder_sections(request: Request, course_id: str, payload: OrderPayload):
    ctx = write_context(request)
    return _json_private(services().structure.reorder_sections(ctx, course_id, payload.ids))


@content_router.patch("/api/sections/{section_id}")
async def rename_section(request: Request, section_id: str, payload: SectionCreatePayload):
    ctx = write_context(request)
    return _json_private(services().structure.rename_section(ctx, section_id, payload.title))


@content_router.get("/api/sections/{section_id}/contents")
async def section_contents(request: Request, section_id: str):
    ctx = read_context(request)
    return _json_private(services().structure.section_contents(ctx, section_id))


@content_router.post("/api/sections/{section_id}/{kind}")
async def add_section_content(request: Request, section_id: str, kind: str, payload: Dict[str, Any] = Body(...)):
    ctx = write_context(request)
    return _json_private(services().structure.add_leaf(ctx, section_id, kind, payload), status_code=201)


@content_router.put("/api/sections/{section_id}/{kind}/order")
async def reorder_section_content(request: Request, section_id: str, kind: str, payload: OrderPayload):
    ctx = write_context(request)
    return _json_private(services().structure.reorder_leaves(ctx, section_id, kind, payload.ids))


@content_router.delete("/api/sections/{section_id}")
async def delete_section(request: Request, section_id: str):
    ctx = write_context(request)
    counts = services().structure.delete_section(ctx, section_id)
    return _json_private({"success": True, "deleted": counts})


@content_router.get("/api/content/{kind}/{leaf_id}")
async def get_content(request: Request, kind: str, leaf_id: str):
    ctx = read_context(request)
    return _json_private(services().structure.get_leaf(ctx, kind, leaf_id))


@content_router.patch("/api/content/{kind}/{leaf_id}")
async def update_content(request: Request, kind: str, leaf_id: str, payload: Dict[str, Any] = Body(...)):
    ctx = write_context(request)
    return _json_private(services().structure.update_leaf(ctx, kind, leaf_id, payload))


@content_router.delete("/api/content/{kind}/{leaf_id}")
async def delete_content(request: Request, kind: str, leaf_id: str):
    ctx = write_context(request)
    services().structure.delete_leaf(ctx, kind, leaf_id)
    return _json_private({"success": True})
