"""
Intake dataclasses — service 层唯一认识的请求格式。

所有 Adapter 的 transform() 返回这里的某一个结构。
Service 只消费这些结构，永远不碰原始 JSON。
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional


@dataclass
class ClinicalSeed:
    """建 appointment 时顺带录入的初始数据，不推进 phase。"""

    chief_complaints: dict = field(default_factory=dict)
    vitals: dict = field(default_factory=dict)
    appointment_type: str = ""
    mode: str = ""
    duration: Optional[int] = None
    notes: str = ""


@dataclass
class ScheduleData:
    scheduled_date: Optional[date]
    scheduled_time: str              # "HH:MM"
    lab_id: str = ""
    seed: Optional[ClinicalSeed] = None
    raw_payload: Any = field(default=None, repr=False)


@dataclass
class AssessmentData:
    vitals: dict = field(default_factory=dict)
    chief_complaints: dict = field(default_factory=dict)
    examination: dict = field(default_factory=dict)
    investigations: dict = field(default_factory=dict)
    treatment: dict = field(default_factory=dict)
    follow_up: dict = field(default_factory=dict)
    raw_payload: Any = field(default=None, repr=False)

    def as_partial(self):
        """只保留提交了的子对象，key 用 camelCase。"""
        sections = {
            'vitals': self.vitals,
            'chiefComplaints': self.chief_complaints,
            'examination': self.examination,
            'investigations': self.investigations,
            'treatment': self.treatment,
            'followUp': self.follow_up,
        }
        return {key: value for key, value in sections.items() if value}


@dataclass
class PatientRegistration:
    patient_id: str
    personal_info: dict = field(default_factory=dict)
    contact_info: dict = field(default_factory=dict)
    emergency_contact: dict = field(default_factory=dict)
    medical_history: dict = field(default_factory=dict)
    photo: Optional[str] = None
    documents: list = field(default_factory=list)
    lab_id: str = ""
    raw_payload: Any = field(default=None, repr=False)


@dataclass
class AssignmentData:
    doctor_id: Optional[str]         # None = 取消分配
    notes: str = ""
    update_patient_assignment: bool = True


@dataclass
class StatusData:
    status: str


@dataclass
class PrescriptionData:
    patient_id: str
    appointment_id: Optional[str] = None
    medicines: list = field(default_factory=list)
    tests: list = field(default_factory=list)
    diagnosis: dict = field(default_factory=dict)
    advice: dict = field(default_factory=dict)
    raw_payload: Any = field(default=None, repr=False)


@dataclass
class DocumentData:
    document_type: str
    file_name: str
    file_url: str
    file_size: Optional[int] = None
    mime_type: str = ""
    description: str = ""


@dataclass
class DocumentChanges:
    changes: dict = field(default_factory=dict)
