"""
Student Models - תלמידים ושורות staging למעבר בין תוכניות (אונליין/פיזי)
"""
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Text

from app.db.database import Base
from app.db.models.tenant import generate_uuid, utcnow


class Student(Base):
    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    parent_id = Column(String(36), nullable=True, index=True)
    name = Column(String(200), nullable=True)
    record_type = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class StudentProgramMigrationStaging(Base):
    """שורת staging — מוחלת ע"י פרוצדורה אטומית ונסגרת עם applied_at"""

    __tablename__ = "student_program_migration_staging"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    target_program_type = Column(String(20), nullable=False, default="online")
    transition_mode = Column(String(20), nullable=False, default="switch")  # switch / coexist
    close_previous_status = Column(String(20), nullable=False, default="paused")  # paused / cancelled
    clear_class_on_online_switch = Column(Boolean, nullable=False, default=True)
    reason = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    applied_at = Column(DateTime(timezone=True), nullable=True)
