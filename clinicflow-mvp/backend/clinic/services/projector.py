"""
Patient Workflow Projector。

Patient.workflow_status 只能通过这里写入：
- project()      纯函数，(当前状态, 事件) → 新状态
- stage()        把投影结果写到内存里的 patient 上，返回需要保存的字段
- apply_event()  读 → stage → 带 version 检查保存

另外负责 Patient 上两份反范式列表（appointments_list / prescriptions_list）的
同步和修复。这两份列表只是缓存，权威数据在 Appointment / Prescription 表。
"""

import enum
import logging
from dataclasses import dataclass, field

from django.utils import timezone

from ..auth import require_role
from ..exceptions import InvalidTransitionError, NotFoundError
from ..models import Patient, WorkflowStatus
from .directory import get_patient
from .store import retry_on_conflict, save_versioned

logger = logging.getLogger(__name__)

CLOSE_ROLES = ('clinic', 'doctor', 'jrdoctor')


class EventType(str, enum.Enum):
    DOCTOR_ASSIGNED = 'DoctorAssigned'
    DOCTOR_UNASSIGNED = 'DoctorUnassigned'
    ASSESSMENT_STARTED = 'AssessmentStarted'
    DIAGNOSIS_RECORDED = 'DiagnosisRecorded'
    PRESCRIPTION_ISSUED = 'PrescriptionIssued'
    APPOINTMENT_COMPLETED = 'AppointmentCompleted'
    EPISODE_STARTED = 'EpisodeStarted'
    EPISODE_CLOSED = 'EpisodeClosed'


@dataclass(frozen=True)
class WorkflowEvent:
    type: EventType
    other_doctor_active: bool = False   # 只对 DoctorUnassigned 有意义
    returning: bool = False             # 只对 EpisodeStarted 有意义
    source: str = ''                    # appointmentId / prescriptionCode，用于日志


# ── 纯投影 ──

_PENDING = (WorkflowStatus.NEW, WorkflowStatus.ASSIGNED, WorkflowStatus.REVISITED)
_ACTIVE = (WorkflowStatus.DOCTOR_OPENED, WorkflowStatus.IN_PROGRESS, WorkflowStatus.REPORTED)


def project(current, event):
    kind = event.type

    if kind == EventType.DOCTOR_ASSIGNED:
        # 已经开始看诊或已出报告，重新分配不把进度打回去
        if current in _ACTIVE or current == WorkflowStatus.COMPLETED:
            return current
        return WorkflowStatus.ASSIGNED

    if kind == EventType.DOCTOR_UNASSIGNED:
        if event.other_doctor_active:
            return current
        return WorkflowStatus.NEW

    if kind == EventType.ASSESSMENT_STARTED:
        if current in _PENDING:
            return WorkflowStatus.DOCTOR_OPENED
        if current == WorkflowStatus.DOCTOR_OPENED:
            return WorkflowStatus.IN_PROGRESS
        return current

    if kind == EventType.DIAGNOSIS_RECORDED:
        if current in (WorkflowStatus.REPORTED, WorkflowStatus.COMPLETED):
            return current
        return WorkflowStatus.IN_PROGRESS

    if kind == EventType.PRESCRIPTION_ISSUED:
        if current == WorkflowStatus.COMPLETED:
            return current
        return WorkflowStatus.REPORTED

    if kind == EventType.APPOINTMENT_COMPLETED:
        return WorkflowStatus.COMPLETED

    if kind == EventType.EPISODE_STARTED:
        return WorkflowStatus.REVISITED if event.returning else WorkflowStatus.NEW

    if kind == EventType.EPISODE_CLOSED:
        if current == WorkflowStatus.REPORTED:
            return WorkflowStatus.COMPLETED
        return current

    raise ValueError(f"Unknown workflow event {kind!r}")


def workflow_bucket(status):
    """报表用的三档分组。"""
    if status in _PENDING:
        return 'pending'
    if status in _ACTIVE:
        return 'inprogress'
    return 'completed'


def stage(patient, event, now=None):
    """把事件投影到内存中的 patient 上，返回要一起保存的字段名。"""
    now = now or timezone.now()
    previous = patient.workflow_status
    patient.workflow_status = project(previous, event)
    patient.last_activity = now
    patient.last_touched_at = now

    if patient.workflow_status != previous:
        logger.info(
            "Patient %s workflow %s -> %s on %s (%s)",
            patient.patient_id, previous, patient.workflow_status, event.type.value, event.source or '-',
        )
    return ['workflow_status', 'last_activity', 'last_touched_at']


@retry_on_conflict
def apply_event(patient_pk, event, actor=None):
    try:
        patient = Patient.objects.get(pk=patient_pk)
    except Patient.DoesNotExist:
        raise NotFoundError(
            message='Patient not found',
            code='PATIENT_NOT_FOUND',
            detail={'patient_pk': str(patient_pk)},
        )

    fields = stage(patient, event)
    return save_versioned(patient, fields)


@retry_on_conflict
def close_episode(patient_id, actor):
    """clinic / doctor 显式结束本次就诊：Reported → Completed。"""
    require_role(actor, CLOSE_ROLES, 'close an episode')

    patient = get_patient(patient_id)
    if patient.workflow_status == WorkflowStatus.COMPLETED:
        return patient
    if patient.workflow_status != WorkflowStatus.REPORTED:
        raise InvalidTransitionError(
            message=f"Cannot close an episode in status {patient.workflow_status}",
            detail={'patient_id': patient_id, 'workflow_status': patient.workflow_status},
        )

    fields = stage(patient, WorkflowEvent(EventType.EPISODE_CLOSED, source=f'actor:{actor.id}'))
    return save_versioned(patient, fields)


# ── 反范式引用 ──

def _iso(value):
    return value.isoformat() if value else None


def appointment_reference(appointment):
    doctor = appointment.doctor
    latest = appointment.prescriptions[-1] if appointment.prescriptions else {}
    issued = appointment.completion_status.get('prescriptionIssued', {}).get('completed', False)
    return {
        'appointmentId': appointment.appointment_id,
        'appointmentObjectId': str(appointment.id),
        'doctorId': str(doctor.id) if doctor else None,
        'doctorName': doctor.display_name if doctor else None,
        'status': appointment.status,
        'scheduledDate': _iso(appointment.scheduled_date),
        'scheduledTime': appointment.scheduled_time,
        'appointmentType': appointment.appointment_type,
        'prescriptionIssued': issued,
        'prescriptionId': latest.get('prescriptionId'),
        'prescriptionCode': latest.get('prescriptionCode'),
    }


def prescription_summary(prescription):
    appointment = prescription.appointment
    return {
        'prescriptionId': str(prescription.id),
        'prescriptionCode': prescription.prescription_code,
        'doctorId': str(prescription.doctor_id),
        'doctorName': prescription.doctor.display_name,
        'appointmentId': appointment.appointment_id if appointment else None,
        'prescribedDate': _iso(prescription.created_at),
        'status': 'Active',
        'medicineCount': len(prescription.medicines or []),
        'testCount': len(prescription.tests or []),
    }


@retry_on_conflict
def sync_appointment_reference(appointment, append_missing=False, **extra):
    """
    用 appointment 当前快照刷新 patient.appointments_list 里对应的条目。

    条目不存在时：append_missing=True 就追加（新建的 appointment，同时成为 current_visit_id），
    否则记日志返回 False。
    """
    patient = Patient.objects.get(pk=appointment.patient_id)
    entry = dict(appointment_reference(appointment), **extra)
    refs = list(patient.appointments_list or [])
    fields = ['appointments_list', 'last_touched_at']

    for index, ref in enumerate(refs):
        if ref.get('appointmentObjectId') == entry['appointmentObjectId']:
            refs[index] = dict(ref, **entry)
            break
    else:
        if not append_missing:
            logger.warning(
                "Patient %s has no list entry for appointment %s, skipping sync",
                patient.patient_id, appointment.appointment_id,
            )
            return False
        refs.append(entry)
        patient.current_visit_id = appointment.appointment_id
        fields.append('current_visit_id')

    patient.appointments_list = refs
    patient.last_touched_at = timezone.now()
    save_versioned(patient, fields)
    return True


@retry_on_conflict
def add_prescription_summary(prescription):
    """按 prescriptionId 去重追加，重复调用无副作用。"""
    patient = Patient.objects.get(pk=prescription.patient_id)
    summaries = list(patient.prescriptions_list or [])
    rx_id = str(prescription.id)

    if any(s.get('prescriptionId') == rx_id for s in summaries):
        return False

    summaries.append(prescription_summary(prescription))
    patient.prescriptions_list = summaries
    patient.last_touched_at = timezone.now()
    save_versioned(patient, ['prescriptions_list', 'last_touched_at'])
    return True


# ── 修复 ──

@dataclass
class RepairReport:
    patient_id: str
    dropped_appointments: list = field(default_factory=list)
    added_appointments: list = field(default_factory=list)
    refreshed_appointments: list = field(default_factory=list)
    dropped_prescriptions: list = field(default_factory=list)
    added_prescriptions: list = field(default_factory=list)

    @property
    def changed(self):
        return bool(
            self.dropped_appointments or self.added_appointments or self.refreshed_appointments
            or self.dropped_prescriptions or self.added_prescriptions
        )

    def as_dict(self):
        return {
            'patientId': self.patient_id,
            'changed': self.changed,
            'droppedAppointments': self.dropped_appointments,
            'addedAppointments': self.added_appointments,
            'refreshedAppointments': self.refreshed_appointments,
            'droppedPrescriptions': self.dropped_prescriptions,
            'addedPrescriptions': self.added_prescriptions,
        }


@retry_on_conflict
def repair_patient_references(patient_id):
    """
    从权威表重新推导两份列表：
    - 指向不存在记录的条目删掉
    - 缺的条目补上
    - 已有条目的状态字段刷新
    保留原有顺序，新补的追加在末尾。
    """
    patient = get_patient(patient_id)
    report = RepairReport(patient_id=patient.patient_id)

    appointments = {
        str(a.id): a
        for a in patient.appointments.select_related('doctor').order_by('created_at')
    }
    new_refs = []
    for ref in patient.appointments_list or []:
        appointment = appointments.pop(ref.get('appointmentObjectId'), None)
        if appointment is None:
            report.dropped_appointments.append(ref.get('appointmentId'))
            continue
        fresh = appointment_reference(appointment)
        if any(ref.get(k) != v for k, v in fresh.items()):
            report.refreshed_appointments.append(appointment.appointment_id)
        new_refs.append(dict(ref, **fresh))
    for appointment in appointments.values():
        report.added_appointments.append(appointment.appointment_id)
        new_refs.append(appointment_reference(appointment))

    prescriptions = {
        str(p.id): p
        for p in patient.prescriptions.select_related('doctor', 'appointment').order_by('created_at')
    }
    new_summaries = []
    for summary in patient.prescriptions_list or []:
        prescription = prescriptions.pop(summary.get('prescriptionId'), None)
        if prescription is None:
            report.dropped_prescriptions.append(summary.get('prescriptionCode'))
            continue
        new_summaries.append(summary)
    for prescription in prescriptions.values():
        report.added_prescriptions.append(prescription.prescription_code)
        new_summaries.append(prescription_summary(prescription))

    if report.changed:
        patient.appointments_list = new_refs
        patient.prescriptions_list = new_summaries
        patient.last_touched_at = timezone.now()
        save_versioned(patient, ['appointments_list', 'prescriptions_list', 'last_touched_at'])
        logger.warning("Repaired references for patient %s: %s", patient.patient_id, report.as_dict())

    return report
