"""
具体 Adapter 实现。

已注册请求类型：
  patient_registration — PatientRegistrationAdapter
  patient_profile      — PatientProfileAdapter
  schedule             — ScheduleAdapter
  assessment           — AssessmentAdapter
  assignment           — AssignmentAdapter
  status               — StatusAdapter
  prescription         — PrescriptionAdapter
  document             — DocumentAdapter
  document_update      — DocumentUpdateAdapter
"""

from typing import Any

from ..models import Appointment, AppointmentStatus
from .base import BaseIntakeAdapter, PATIENT_ID_RE, as_dict, parse_date, parse_time
from .types import (
    AssessmentData,
    AssignmentData,
    ClinicalSeed,
    DocumentChanges,
    DocumentData,
    PatientRegistration,
    PrescriptionData,
    ScheduleData,
    StatusData,
)

APPOINTMENT_TYPES = [value for value, _ in Appointment.TYPE_CHOICES]
APPOINTMENT_MODES = [value for value, _ in Appointment.MODE_CHOICES]


class JsonAdapter(BaseIntakeAdapter):
    def parse(self) -> Any:
        return self._load_json()


# ── Patient ────────────────────────────────────────────────────────────────
#
# {
#   "patientId": "9876543210",
#   "labId": "LAB001",
#   "personalInfo":     { "fullName": "Asha Rao", "dateOfBirth": "1990-04-02", "gender": "Female" },
#   "contactInfo":      { "email": "asha@example.com", "address": { "city": "Pune" } },
#   "emergencyContact": { "name": "Ravi Rao", "phone": "9123456780" },
#   "medicalHistory":   { "allergies": ["penicillin"] },
#   "documents":        [ { "fileName": "id.pdf", "fileUrl": "..." } ]
# }

class PatientRegistrationAdapter(JsonAdapter):
    kind = "patient_registration"
    require_patient_id = True

    def transform(self) -> PatientRegistration:
        raw = self._parsed
        documents = raw.get("documents") or []
        if not isinstance(documents, list):
            documents = [documents]

        return PatientRegistration(
            patient_id=str(raw.get("patientId") or "").strip(),
            personal_info=as_dict(raw.get("personalInfo")),
            contact_info=as_dict(raw.get("contactInfo")),
            emergency_contact=as_dict(raw.get("emergencyContact")),
            medical_history=as_dict(raw.get("medicalHistory")),
            photo=raw.get("photo") or None,
            documents=documents,
            lab_id=str(raw.get("labId") or "").strip(),
            raw_payload=raw,
        )

    def validate(self, data: PatientRegistration) -> None:
        if self.require_patient_id:
            if not PATIENT_ID_RE.match(data.patient_id):
                self.error("patientId", "patientId must be a 10-digit phone number.")

        dob = data.personal_info.get("dateOfBirth")
        if dob and parse_date(dob) is None:
            self.error("personalInfo.dateOfBirth", "dateOfBirth must be YYYY-MM-DD.")

        super().validate(data)


class PatientProfileAdapter(PatientRegistrationAdapter):
    """PATCH profile：patientId 来自 URL，body 里的一律忽略。"""

    kind = "patient_profile"
    require_patient_id = False

    def transform(self) -> PatientRegistration:
        data = super().transform()
        data.patient_id = ""
        return data


# ── Appointment ────────────────────────────────────────────────────────────
#
# {
#   "scheduledDate": "2026-10-19", "scheduledTime": "10:30",
#   "appointmentType": "Consultation", "mode": "In-person", "duration": 30,
#   "chiefComplaints": { "primary": "fever" }, "vitals": { "pulse": 82 },
#   "notes": "walk-in"
# }

class ScheduleAdapter(JsonAdapter):
    kind = "schedule"

    def transform(self) -> ScheduleData:
        raw = self._parsed
        duration = raw.get("duration")

        return ScheduleData(
            scheduled_date=parse_date(raw.get("scheduledDate")),
            scheduled_time=parse_time(raw.get("scheduledTime")) or "",
            lab_id=str(raw.get("labId") or "").strip(),
            seed=ClinicalSeed(
                chief_complaints=as_dict(raw.get("chiefComplaints")),
                vitals=as_dict(raw.get("vitals")),
                appointment_type=str(raw.get("appointmentType") or "").strip(),
                mode=str(raw.get("mode") or "").strip(),
                duration=duration if isinstance(duration, int) and not isinstance(duration, bool) else None,
                notes=str(raw.get("notes") or "").strip(),
            ),
            raw_payload=raw,
        )

    def validate(self, data: ScheduleData) -> None:
        raw = self._parsed

        if data.scheduled_date is None:
            self.error("scheduledDate", "scheduledDate is required (YYYY-MM-DD).")
        if not data.scheduled_time:
            self.error("scheduledTime", "scheduledTime is required (HH:MM, 24h).")

        seed = data.seed
        if raw.get("duration") is not None:
            if seed.duration is None or not 15 <= seed.duration <= 120:
                self.error("duration", "duration must be an integer between 15 and 120.")
        if seed.appointment_type and seed.appointment_type not in APPOINTMENT_TYPES:
            self.error("appointmentType", f"appointmentType must be one of {APPOINTMENT_TYPES}.")
        if seed.mode and seed.mode not in APPOINTMENT_MODES:
            self.error("mode", f"mode must be one of {APPOINTMENT_MODES}.")

        super().validate(data)


class AssessmentAdapter(JsonAdapter):
    kind = "assessment"

    def transform(self) -> AssessmentData:
        raw = self._parsed
        return AssessmentData(
            vitals=as_dict(raw.get("vitals")),
            chief_complaints=as_dict(raw.get("chiefComplaints")),
            examination=as_dict(raw.get("examination")),
            investigations=as_dict(raw.get("investigations")),
            treatment=as_dict(raw.get("treatment")),
            follow_up=as_dict(raw.get("followUp")),
            raw_payload=raw,
        )

    def validate(self, data: AssessmentData) -> None:
        for key in ("vitals", "chiefComplaints", "examination", "investigations", "treatment", "followUp"):
            value = self._parsed.get(key)
            if value is not None and not isinstance(value, dict):
                self.error(key, f"{key} must be an object.")
        if not data.as_partial() and not self._errors:
            self.error("body", "At least one assessment section is required.")

        super().validate(data)


class AssignmentAdapter(JsonAdapter):
    kind = "assignment"

    def transform(self) -> AssignmentData:
        raw = self._parsed
        doctor_id = raw.get("doctorId")
        return AssignmentData(
            doctor_id=str(doctor_id).strip() if doctor_id else None,
            notes=str(raw.get("notes") or "").strip(),
            update_patient_assignment=bool(raw.get("updatePatientAssignment", True)),
        )

    def validate(self, data: AssignmentData) -> None:
        if "doctorId" not in self._parsed:
            self.error("doctorId", "doctorId is required (null to unassign).")
        super().validate(data)


class StatusAdapter(JsonAdapter):
    kind = "status"

    def transform(self) -> StatusData:
        return StatusData(status=str(self._parsed.get("status") or "").strip())

    def validate(self, data: StatusData) -> None:
        if data.status not in AppointmentStatus.values:
            self.error("status", f"status must be one of {list(AppointmentStatus.values)}.")
        super().validate(data)


# ── Prescription ───────────────────────────────────────────────────────────
#
# {
#   "patientId": "9876543210", "appointmentId": "APT-LAB001-20261019-001",
#   "medicines": [ { "medicineName": "Paracetamol", "dosage": "500mg", "frequency": "1-0-1" } ],
#   "tests": [ { "testName": "CBC" } ],
#   "diagnosis": { "primary": "Viral fever" },
#   "advice": { "general": "Rest, fluids" }
# }

class PrescriptionAdapter(JsonAdapter):
    kind = "prescription"

    def transform(self) -> PrescriptionData:
        raw = self._parsed
        medicines = raw.get("medicines") or []
        tests = raw.get("tests") or []
        return PrescriptionData(
            patient_id=str(raw.get("patientId") or "").strip(),
            appointment_id=(str(raw.get("appointmentId")).strip() or None) if raw.get("appointmentId") else None,
            medicines=medicines if isinstance(medicines, list) else [],
            tests=tests if isinstance(tests, list) else [],
            diagnosis=as_dict(raw.get("diagnosis")),
            advice=as_dict(raw.get("advice")),
            raw_payload=raw,
        )

    def validate(self, data: PrescriptionData) -> None:
        if not PATIENT_ID_RE.match(data.patient_id):
            self.error("patientId", "patientId must be a 10-digit phone number.")

        for i, medicine in enumerate(data.medicines):
            if not isinstance(medicine, dict) or not (medicine.get("medicineName") or medicine.get("name")):
                self.error(f"medicines[{i}]", "Each medicine needs a medicineName.")
        for i, test in enumerate(data.tests):
            if not isinstance(test, dict) or not (test.get("testName") or test.get("name")):
                self.error(f"tests[{i}]", "Each test needs a testName.")

        if not data.medicines and not data.tests:
            self.error("medicines", "A prescription needs at least one medicine or test.")

        super().validate(data)


# ── Documents ──────────────────────────────────────────────────────────────

DOCUMENT_FIELDS = ("documentType", "fileName", "fileUrl", "fileSize", "mimeType", "description")


class DocumentAdapter(JsonAdapter):
    kind = "document"

    def transform(self) -> DocumentData:
        raw = self._parsed
        size = raw.get("fileSize")
        return DocumentData(
            document_type=str(raw.get("documentType") or "other").strip(),
            file_name=str(raw.get("fileName") or "").strip(),
            file_url=str(raw.get("fileUrl") or "").strip(),
            file_size=size if isinstance(size, int) and not isinstance(size, bool) else None,
            mime_type=str(raw.get("mimeType") or "").strip(),
            description=str(raw.get("description") or "").strip(),
        )

    def validate(self, data: DocumentData) -> None:
        if not data.file_name:
            self.error("fileName", "fileName is required.")
        if not data.file_url:
            self.error("fileUrl", "fileUrl is required.")
        super().validate(data)


class DocumentUpdateAdapter(JsonAdapter):
    kind = "document_update"

    def transform(self) -> DocumentChanges:
        return DocumentChanges(
            changes={k: v for k, v in self._parsed.items() if k in DOCUMENT_FIELDS},
        )

    def validate(self, data: DocumentChanges) -> None:
        if not data.changes:
            self.error("body", f"Provide at least one of {list(DOCUMENT_FIELDS)}.")
        super().validate(data)
