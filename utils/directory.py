"""Student/school directory boundary.

Rosters and contact details are owned by the wider school system; the fee
subsystem only reads them, through these two or three calls.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from extensions import db
from models import Campus, Student


@dataclass
class StudentSnapshot:
    id: str
    campus_id: str
    class_id: str
    name: str
    admission_no: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    guardian_name: Optional[str] = None
    guardian_email: Optional[str] = None

    @property
    def contact_email(self) -> Optional[str]:
        return self.guardian_email or self.email

    def as_dict(self) -> dict:
        return {
            "student_id": self.id,
            "student_name": self.name,
            "admission_no": self.admission_no,
            "class_id": self.class_id,
            "student_email": self.email,
            "student_phone": self.phone,
            "parent_name": self.guardian_name,
            "parent_email": self.guardian_email,
        }


def resolve_class_roster(campus_id: str, class_id: str) -> List[str]:
    rows = (
        db.session.query(Student.id)
        .filter(Student.campus_id == campus_id, Student.class_id == class_id, Student.is_active.is_(True))
        .order_by(Student.id)
        .all()
    )
    return [r[0] for r in rows]


def get_student(student_id: str) -> Optional[StudentSnapshot]:
    s = db.session.get(Student, student_id)
    if s is None:
        return None
    return StudentSnapshot(
        id=s.id,
        campus_id=s.campus_id,
        class_id=s.class_id,
        name=s.name,
        admission_no=s.admission_no,
        email=s.email,
        phone=s.phone,
        guardian_name=s.guardian_name,
        guardian_email=s.guardian_email,
    )


def get_campus(campus_id: str) -> Optional[Campus]:
    return db.session.get(Campus, campus_id)
