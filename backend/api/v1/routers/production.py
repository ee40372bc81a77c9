"""
Production Router — serving students and attending classes on the floor.

  POST /api/v1/production/students/{student_id}/serve
  POST /api/v1/production/classes/{class_id}/attend

Both accept ``false`` to undo a mistaken tap. Orders that are not on the
production floor answer 422.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.deps import get_current_user, get_store
from production.floor import attend_class, serve_student
from store.record_store import RecordStore
from workflow.transitions import ActorContext

router = APIRouter(prefix="/api/v1/production", tags=["production"])


class ServeRequest(BaseModel):
    served: bool = True


class AttendRequest(BaseModel):
    attended: bool = True


class StudentServiceResponse(BaseModel):
    id: UUID
    class_id: UUID
    full_name: str
    is_served: bool
    served_at: datetime | None

    model_config = {"from_attributes": True}


class ClassAttendanceResponse(BaseModel):
    id: UUID
    order_id: UUID
    name: str
    is_attended: bool
    students_to_serve: int
    students_served: int

    model_config = {"from_attributes": True}


@router.post("/students/{student_id}/serve", response_model=StudentServiceResponse)
async def serve(
    student_id: UUID,
    body: ServeRequest = ServeRequest(),
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Mark a student's garments handed over."""
    return await serve_student(store, student_id, actor=ActorContext.user(str(user["sub"])), served=body.served)


@router.post("/classes/{class_id}/attend", response_model=ClassAttendanceResponse)
async def attend(
    class_id: UUID,
    body: AttendRequest = AttendRequest(),
    store: RecordStore = Depends(get_store),
    user: dict = Depends(get_current_user),
):
    """Mark a class visited by the print crew."""
    return await attend_class(store, class_id, actor=ActorContext.user(str(user["sub"])), attended=body.attended)
