"""
Admin Student API Routes
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_admin
from app.core.auth import TokenPayload
from app.core.exceptions import ValidationException
from app.core.middleware import get_request_id
from app.db.database import get_db
from app.domain.services.move_online import MoveOnlineService

router = APIRouter()


class MoveOnlineRequest(BaseModel):
    student_id: Optional[str] = None
    transition_mode: Optional[str] = None
    close_previous_status: Optional[str] = None
    clear_class_on_online_switch: Optional[bool] = None
    reason: Optional[str] = None


@router.post(
    "/students/move-online",
    summary="העברת תלמיד לתוכנית אונליין",
    description=(
        "יוצר שורת staging ומחיל אותה בפרוצדורה אטומית. "
        "transition_mode: switch (ברירת מחדל) / coexist; "
        "close_previous_status: paused (ברירת מחדל) / cancelled."
    ),
)
async def move_student_online(
    data: MoveOnlineRequest,
    request: Request,
    auth: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Move one student to the online program"""
    student_id = (data.student_id or "").strip()
    if not student_id:
        raise ValidationException("student_id is required", field="student_id")

    service = MoveOnlineService(db)
    result = await service.move_student_to_online(
        auth.tenant_id,
        student_id,
        auth.user_id,
        transition_mode="coexist" if data.transition_mode == "coexist" else "switch",
        close_previous_status="cancelled" if data.close_previous_status == "cancelled" else "paused",
        clear_class_on_online_switch=(
            True if data.clear_class_on_online_switch is None else data.clear_class_on_online_switch
        ),
        reason=data.reason,
    )

    return {
        "ok": True,
        "request_id": get_request_id(request),
        "result": result.to_dict(),
    }
