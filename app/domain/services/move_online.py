"""
Move Student Online - מעבר תלמיד לתוכנית אונליין דרך שורת staging

הזרימה: בדיקת תלמיד ב-tenant → אין שורת staging פתוחה → יצירת שורה →
הפרוצדורה apply_single_student_program_migration_staging מחילה אותה
בטרנזקציה אחת → אימות שהשורה שהוחלה היא בדיוק השורה שלנו.
"""
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ErrorCode, MoveOnlineError
from app.core.logging import get_logger
from app.db.errors import UNIQUE_VIOLATION_CODE, StoreError, to_store_error
from app.db.models.student import Student, StudentProgramMigrationStaging
from app.db.rpc import call_procedure

logger = get_logger(__name__)

APPLY_STAGING_PROCEDURE = "apply_single_student_program_migration_staging"
STAGING_TABLE = "student_program_migration_staging"

TARGET_ENROLLMENT_STATUSES = frozenset({"active", "pending_payment"})

DEFAULT_MOVE_REASON = "Admin UI quick move to online"

_MOVE_FAILED_MESSAGE = "Failed to move student to online. Please try again."
_PENDING_MIGRATION_MESSAGE = "This student already has a pending migration. Clear it first."
_STUDENT_NOT_FOUND_MESSAGE = "Student not found in this tenant."


@dataclass(frozen=True)
class MoveOnlineApplyRow:
    processed: int
    enrollments_upserted: int
    previous_enrollments_closed: int
    class_assignments_cleared: int
    processed_staging_id: Optional[str]
    processed_student_id: Optional[str]
    target_status: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "enrollments_upserted": self.enrollments_upserted,
            "previous_enrollments_closed": self.previous_enrollments_closed,
            "class_assignments_cleared": self.class_assignments_cleared,
            "processed_staging_id": self.processed_staging_id,
            "processed_student_id": self.processed_student_id,
            "target_status": self.target_status,
        }


def _to_int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _to_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _normalize_apply_row(result: Any) -> Optional[MoveOnlineApplyRow]:
    if not isinstance(result, list) or not result or not isinstance(result[0], dict):
        return None
    row = result[0]
    return MoveOnlineApplyRow(
        processed=_to_int(row.get("processed")),
        enrollments_upserted=_to_int(row.get("enrollments_upserted")),
        previous_enrollments_closed=_to_int(row.get("previous_enrollments_closed")),
        class_assignments_cleared=_to_int(row.get("class_assignments_cleared")),
        processed_staging_id=_to_id(row.get("processed_staging_id")),
        processed_student_id=_to_id(row.get("processed_student_id")),
        target_status=_to_id(row.get("target_status")),
    )


def validate_move_online_apply_result(
    result: Any,
    staging_id: str,
    student_id: str,
) -> MoveOnlineApplyRow:
    """
    מקבל רק שורה שמעידה שבדיוק ה-staging שלנו הוחל על התלמיד שלנו.

    מגן מפני פרוצדורה שהחילה שורה אחרת תחת migrations מקבילים.
    """
    row = _normalize_apply_row(result)
    if row is None or row.processed != 1:
        raise MoveOnlineError(
            409,
            ErrorCode.MOVE_ONLINE_NOT_APPLIED,
            "Move could not be completed. Please retry.",
        )

    if row.processed_staging_id != staging_id or row.processed_student_id != student_id:
        raise MoveOnlineError(
            409,
            ErrorCode.MOVE_ONLINE_TARGET_MISMATCH,
            "Move result did not match the selected student.",
            internal_message=(
                f"expected staging={staging_id} student={student_id}, "
                f"got staging={row.processed_staging_id} student={row.processed_student_id}"
            ),
        )

    if row.target_status not in TARGET_ENROLLMENT_STATUSES:
        raise MoveOnlineError(
            409,
            ErrorCode.MOVE_ONLINE_INVALID_TARGET_STATUS,
            "Move completed with invalid enrollment status. Please contact support.",
            internal_message=f"target_status={row.target_status!r}",
        )

    return row


def to_move_online_error(error: Any) -> MoveOnlineError:
    """מיפוי כל כשל ל-MoveOnlineError; הודעת הלקוח לעולם לא מכילה טקסט פנימי"""
    if isinstance(error, MoveOnlineError):
        return error

    store_error = to_store_error(error)
    if isinstance(error, BaseException) and not isinstance(error, (StoreError, DBAPIError)):
        raw_message = str(error) or "Failed to move student to online"
    elif store_error is not None and store_error.message:
        raw_message = store_error.message
    else:
        raw_message = "Failed to move student to online"
    normalized = raw_message.lower()

    if "student not found" in normalized:
        return MoveOnlineError(404, ErrorCode.STUDENT_NOT_FOUND, _STUDENT_NOT_FOUND_MESSAGE, raw_message)

    if "pending migration row" in normalized:
        return MoveOnlineError(409, ErrorCode.PENDING_MIGRATION_EXISTS, _PENDING_MIGRATION_MESSAGE, raw_message)

    if store_error is not None and store_error.code == UNIQUE_VIOLATION_CODE:
        if STAGING_TABLE not in store_error.text:
            return MoveOnlineError(500, ErrorCode.MOVE_ONLINE_FAILED, _MOVE_FAILED_MESSAGE, raw_message)
        return MoveOnlineError(409, ErrorCode.PENDING_MIGRATION_EXISTS, _PENDING_MIGRATION_MESSAGE, raw_message)

    if "forbidden" in normalized or "admin access required" in normalized:
        return MoveOnlineError(
            403,
            ErrorCode.FORBIDDEN,
            "You do not have permission to move this student.",
            raw_message,
        )

    return MoveOnlineError(500, ErrorCode.MOVE_ONLINE_FAILED, _MOVE_FAILED_MESSAGE, raw_message)


class MoveOnlineService:
    """Service for staging + applying a single student's move to online"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _student_exists(self, tenant_id: str, student_id: str) -> bool:
        result = await self.db.execute(
            select(Student.id).where(Student.tenant_id == tenant_id, Student.id == student_id)
        )
        return result.scalar_one_or_none() is not None

    async def _pending_staging_count(self, tenant_id: str, student_id: str) -> int:
        result = await self.db.execute(
            select(func.count(StudentProgramMigrationStaging.id)).where(
                StudentProgramMigrationStaging.tenant_id == tenant_id,
                StudentProgramMigrationStaging.student_id == student_id,
                StudentProgramMigrationStaging.applied_at.is_(None),
            )
        )
        return int(result.scalar_one() or 0)

    async def _insert_staging_row(
        self,
        tenant_id: str,
        student_id: str,
        transition_mode: str,
        close_previous_status: str,
        clear_class_on_online_switch: bool,
        reason: str,
        actor_user_id: str,
    ) -> StudentProgramMigrationStaging:
        staging = StudentProgramMigrationStaging(
            tenant_id=tenant_id,
            student_id=student_id,
            target_program_type="online",
            transition_mode=transition_mode,
            close_previous_status=close_previous_status,
            clear_class_on_online_switch=clear_class_on_online_switch,
            reason=reason,
            created_by=actor_user_id,
        )
        self.db.add(staging)
        try:
            await self.db.commit()
        except DBAPIError as e:
            await self.db.rollback()
            raise to_store_error(e) or StoreError(message=str(e)) from e
        await self.db.refresh(staging)
        if not staging.id:
            raise MoveOnlineError(
                500,
                ErrorCode.STAGING_INSERT_FAILED,
                "Could not create migration staging row.",
            )
        return staging

    async def move_student_to_online(
        self,
        tenant_id: str,
        student_id: str,
        actor_user_id: str,
        *,
        transition_mode: str = "switch",
        close_previous_status: str = "paused",
        clear_class_on_online_switch: bool = True,
        reason: Optional[str] = None,
    ) -> MoveOnlineApplyRow:
        """זורק MoveOnlineError בלבד — כל כשל אחר ממופה דרך to_move_online_error"""
        try:
            if not await self._student_exists(tenant_id, student_id):
                raise MoveOnlineError(404, ErrorCode.STUDENT_NOT_FOUND, _STUDENT_NOT_FOUND_MESSAGE)

            if await self._pending_staging_count(tenant_id, student_id) > 0:
                raise MoveOnlineError(409, ErrorCode.PENDING_MIGRATION_EXISTS, _PENDING_MIGRATION_MESSAGE)

            staging = await self._insert_staging_row(
                tenant_id,
                student_id,
                transition_mode,
                close_previous_status,
                clear_class_on_online_switch,
                (reason or DEFAULT_MOVE_REASON).strip(),
                actor_user_id,
            )

            rows = await call_procedure(self.db, APPLY_STAGING_PROCEDURE, {
                "p_tenant_id": tenant_id,
                "p_staging_id": staging.id,
            })
            applied = validate_move_online_apply_result(rows, staging.id, student_id)
        except (MoveOnlineError, StoreError, SQLAlchemyError) as e:
            mapped = to_move_online_error(e)
            log_level = "error" if mapped.status >= 500 else "warning"
            getattr(logger, log_level)(
                "Move to online failed",
                extra_data={
                    "tenant_id": tenant_id,
                    "student_id": student_id,
                    "error_code": mapped.code,
                    "status": mapped.status,
                },
            )
            if mapped is e:
                raise
            raise mapped from e

        logger.info(
            "Student moved to online",
            extra_data={
                "tenant_id": tenant_id,
                "student_id": student_id,
                "staging_id": staging.id,
                "target_status": applied.target_status,
            },
        )
        return applied
