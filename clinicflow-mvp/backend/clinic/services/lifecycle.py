"""
Appointment Lifecycle Controller。

Appointment 的三条状态线：
- status:            Scheduled → Confirmed → In-Progress → Completed（见 ALLOWED_TRANSITIONS）
- workflow_phase:    registered → assigned → in-assessment → diagnosed → prescribed → completed，只进不退
- completion_status: 每一步 completed 只能 false → true

Patient 侧的 workflow_status 通过 projector 事件同步，这里不直接写。
"""

import copy
import logging
import uuid

from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from ..auth import require_role
from ..datewindow import DateWindow
from ..exceptions import (
    ConflictError, InvalidTransitionError, NotFoundError, UnauthorizedError, ValidationError,
)
from ..models import (
    Appointment, AppointmentStatus, PHASE_ORDER, WorkflowPhase, default_completion_status,
)
from . import projector
from .directory import get_assignable_doctor, get_lab, get_patient, resolve_staff
from .projector import EventType, WorkflowEvent
from .store import create_with_sequence, retry_on_conflict, save_versioned

logger = logging.getLogger(__name__)

SCHEDULE_ROLES = ('clinic', 'assigner')
ASSIGN_ROLES = ('assigner', 'clinic')
ASSESSMENT_ROLES = ('doctor', 'jrdoctor', 'clinic')
STATUS_ROLES = ('doctor', 'jrdoctor', 'clinic', 'assigner')
COMPLETE_ROLES = ('clinic', 'doctor')
DOCUMENT_ADMIN_ROLES = ('clinic', 'assigner')

ALLOWED_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.IN_PROGRESS: {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
    AppointmentStatus.RESCHEDULED: set(),
}

# 这些状态下不能再录入临床数据
CLOSED_FOR_RECORDING = (
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
    AppointmentStatus.RESCHEDULED,
)

# partial 的 camelCase key → model 字段
CLINICAL_FIELDS = {
    'vitals': 'vitals',
    'chiefComplaints': 'chief_complaints',
    'examination': 'examination',
    'investigations': 'investigations',
    'treatment': 'treatment',
    'followUp': 'follow_up',
}


# ── 小工具 ──

def get_appointment(appointment_id):
    """appointment_id 既可以是 APT-... 业务编号，也可以是 UUID。"""
    queryset = Appointment.objects.select_related('patient', 'doctor', 'lab')
    try:
        return queryset.get(pk=uuid.UUID(str(appointment_id)))
    except (ValueError, Appointment.DoesNotExist):
        pass
    try:
        return queryset.get(appointment_id=appointment_id)
    except Appointment.DoesNotExist:
        raise NotFoundError(
            message='Appointment not found',
            code='APPOINTMENT_NOT_FOUND',
            detail={'appointment_id': str(appointment_id)},
        )


def advance_phase(appointment, target):
    """只前进，不后退。返回是否发生了变化。"""
    if PHASE_ORDER.index(target) > appointment.phase_rank:
        logger.info(
            "Appointment %s phase %s -> %s",
            appointment.appointment_id, appointment.workflow_phase, target,
        )
        appointment.workflow_phase = target
        return True
    return False


def mark_completed_status(completion, step, now, actor_id):
    """completion_status 单调：已完成的步骤保持原来的时间戳和操作人。"""
    status = completion.setdefault(
        step, {'completed': False, 'completedAt': None, 'completedBy': None}
    )
    if status.get('completed'):
        return False
    status.update(completed=True, completedAt=now.isoformat(), completedBy=actor_id)
    return True


def mark_completed(appointment, step, now, actor_id):
    return mark_completed_status(appointment.completion_status, step, now, actor_id)


def deep_merge(base, incoming):
    """逐层合并 dict，叶子节点后写覆盖。不修改入参。"""
    merged = copy.deepcopy(base) if base else {}
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def check_transition(current, target):
    if target not in AppointmentStatus.values:
        raise ValidationError(
            message=f"Unknown appointment status {target!r}",
            code='INVALID_STATUS',
            detail={'allowed': list(AppointmentStatus.values)},
        )
    if target not in ALLOWED_TRANSITIONS[AppointmentStatus(current)]:
        raise InvalidTransitionError(
            message=f"Cannot move appointment from {current} to {target}",
            detail={
                'from': current,
                'to': target,
                'allowed': sorted(ALLOWED_TRANSITIONS[AppointmentStatus(current)]),
            },
        )


def _stamp(payload, now, actor_id):
    return dict(payload, recordedAt=now.isoformat(), recordedBy=actor_id)


def sync_patient_list(appointment, **kwargs):
    """
    反范式列表同步是 cosmetic 步骤：失败只记日志，不影响主写入。
    repair_patient_references 之后会把它修好。
    """
    try:
        return projector.sync_appointment_reference(appointment, **kwargs)
    except (ConflictError, DatabaseError) as exc:
        logger.warning(
            "Could not sync list entry for appointment %s: %s",
            appointment.appointment_id, exc,
        )
        return False


# ── 操作 ──

def schedule_appointment(patient_id, schedule, clinical_seed=None, actor=None):
    """
    为 patient 建一个新的 Appointment（Scheduled / registered）。

    schedule 是 intake 的 ScheduleData：scheduled_date 已是 date，scheduled_time 已校验为 HH:MM。
    """
    require_role(actor, SCHEDULE_ROLES, 'schedule appointments')

    patient = get_patient(patient_id)
    if schedule.scheduled_date is None or not schedule.scheduled_time:
        raise ValidationError(
            message='scheduledDate and scheduledTime are required',
            code='INVALID_SCHEDULE',
            detail={'patient_id': patient_id},
        )

    now = timezone.now()
    staff = resolve_staff(actor)
    lab = patient.lab
    if schedule.lab_id and schedule.lab_id != lab.lab_id:
        lab = get_lab(schedule.lab_id)

    completion = default_completion_status()
    mark_completed_status(completion, 'clinicRegistration', now, actor.id)

    seed = clinical_seed
    values = {
        'patient': patient,
        'lab': lab,
        'scheduled_date': schedule.scheduled_date,
        'scheduled_time': schedule.scheduled_time,
        'duration': (seed.duration if seed and seed.duration else 30),
        'appointment_type': (seed.appointment_type if seed and seed.appointment_type else 'Consultation'),
        'mode': (seed.mode if seed and seed.mode else 'In-person'),
        'assignment_notes': (seed.notes if seed and seed.notes else ''),
        'completion_status': completion,
        'created_by': staff,
        'last_modified_by': staff,
    }
    if seed and seed.vitals:
        values['vitals'] = _stamp(seed.vitals, now, actor.id)
    if seed and seed.chief_complaints:
        values['chief_complaints'] = _stamp(seed.chief_complaints, now, actor.id)

    # 编号里的日期是 lab 本地日期，不是 UTC
    local_day = DateWindow(now, settings.CLINIC_UTC_OFFSET_MINUTES).local_date()
    stem = f"APT-{lab.lab_id}-{local_day:%Y%m%d}"

    appointment = create_with_sequence(Appointment, 'appointment_id', stem, **values)

    logger.info(
        "Scheduled %s for patient %s on %s %s",
        appointment.appointment_id, patient.patient_id, appointment.scheduled_date, appointment.scheduled_time,
    )

    sync_patient_list(appointment, append_missing=True)
    return appointment


@retry_on_conflict
def assign_doctor(appointment_id, doctor_id, notes='', actor=None):
    """
    设置 / 清空 appointment 的医生。

    重新分配直接替换 doctor 字段，同一时刻只有一个医生。
    清空不会让 phase 回退。
    """
    require_role(actor, ASSIGN_ROLES, 'assign doctors')

    appointment = get_appointment(appointment_id)
    now = timezone.now()
    staff = resolve_staff(actor)

    if doctor_id:
        doctor = get_assignable_doctor(doctor_id)
        appointment.doctor = doctor
        appointment.assigned_at = now
        appointment.assigned_by = staff
        advance_phase(appointment, WorkflowPhase.ASSIGNED)
    else:
        appointment.doctor = None
        appointment.assigned_at = None
        appointment.assigned_by = staff

    if notes:
        appointment.assignment_notes = notes
    appointment.last_modified_by = staff

    save_versioned(appointment, [
        'doctor', 'assigned_at', 'assigned_by', 'assignment_notes',
        'workflow_phase', 'last_modified_by',
    ])
    logger.info(
        "Appointment %s doctor -> %s",
        appointment.appointment_id, appointment.doctor_id or 'none',
    )

    sync_patient_list(appointment)
    return appointment


@retry_on_conflict
def _write_assessment(appointment_id, partial, actor):
    appointment = get_appointment(appointment_id)

    if appointment.status in CLOSED_FOR_RECORDING:
        raise InvalidTransitionError(
            message=f"Cannot record assessment on a {appointment.status} appointment",
            detail={'appointment_id': appointment.appointment_id, 'status': appointment.status},
        )

    now = timezone.now()
    changed = ['completion_status', 'workflow_phase', 'status', 'last_modified_by']

    for key, value in partial.items():
        field_name = CLINICAL_FIELDS[key]
        merged = deep_merge(getattr(appointment, field_name), value)
        setattr(appointment, field_name, _stamp(merged, now, actor.id))
        changed.append(field_name)

    started = bool(partial.get('vitals') or partial.get('chiefComplaints'))
    diagnosed = bool((partial.get('examination') or {}).get('provisionalDiagnosis'))

    if started:
        mark_completed(appointment, 'vitalsRecorded', now, actor.id)
        mark_completed(appointment, 'doctorAssessment', now, actor.id)
    if diagnosed:
        mark_completed(appointment, 'diagnosisCompleted', now, actor.id)

    if appointment.workflow_phase in (WorkflowPhase.REGISTERED, WorkflowPhase.ASSIGNED):
        advance_phase(appointment, WorkflowPhase.IN_ASSESSMENT)
    if diagnosed and appointment.workflow_phase == WorkflowPhase.IN_ASSESSMENT:
        advance_phase(appointment, WorkflowPhase.DIAGNOSED)

    if appointment.status in (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED):
        appointment.status = AppointmentStatus.IN_PROGRESS

    appointment.last_modified_by = resolve_staff(actor)
    save_versioned(appointment, changed)

    # AssessmentStarted 只看 vitals / 主诉；只有 treatment 之类的数据不算开始看诊
    return appointment, started, diagnosed


def record_assessment(appointment_id, partial, actor):
    """
    录入 vitals / 主诉 / 查体 / 检查 / 治疗 / 随访，任意子集。

    写 Appointment 之后再把事件投到 Patient 上；投影失败直接抛出。
    """
    require_role(actor, ASSESSMENT_ROLES, 'record assessments')

    partial = {k: v for k, v in (partial or {}).items() if v}
    unknown = set(partial) - set(CLINICAL_FIELDS)
    if not partial or unknown:
        raise ValidationError(
            message='Assessment payload is empty or has unknown sections',
            code='EMPTY_ASSESSMENT' if not partial else 'UNKNOWN_SECTION',
            detail={'allowed': list(CLINICAL_FIELDS), 'unknown': sorted(unknown)},
        )

    appointment, started, diagnosed = _write_assessment(appointment_id, partial, actor)

    source = appointment.appointment_id
    if started:
        projector.apply_event(
            appointment.patient_id, WorkflowEvent(EventType.ASSESSMENT_STARTED, source=source), actor,
        )
    if diagnosed:
        projector.apply_event(
            appointment.patient_id, WorkflowEvent(EventType.DIAGNOSIS_RECORDED, source=source), actor,
        )

    sync_patient_list(appointment)
    return appointment


@retry_on_conflict
def _write_status(appointment_id, new_status, actor):
    appointment = get_appointment(appointment_id)

    if appointment.status == new_status:
        return appointment, False

    check_transition(appointment.status, new_status)

    previous = appointment.status
    appointment.status = new_status
    if new_status == AppointmentStatus.COMPLETED:
        appointment.completed_at = timezone.now()
        advance_phase(appointment, WorkflowPhase.COMPLETED)
    appointment.last_modified_by = resolve_staff(actor)

    save_versioned(appointment, ['status', 'completed_at', 'workflow_phase', 'last_modified_by'])
    logger.info("Appointment %s status %s -> %s", appointment.appointment_id, previous, new_status)
    return appointment, True


def update_status(appointment_id, new_status, actor):
    require_role(actor, STATUS_ROLES, 'change appointment status')

    if new_status not in AppointmentStatus.values:
        raise ValidationError(
            message=f"Unknown appointment status {new_status!r}",
            code='INVALID_STATUS',
            detail={'allowed': list(AppointmentStatus.values)},
        )

    appointment, changed = _write_status(appointment_id, new_status, actor)
    if not changed:
        return appointment

    # 只有 clinic / doctor 显式完成才把 patient 推到 Completed
    if new_status == AppointmentStatus.COMPLETED and actor.role in COMPLETE_ROLES:
        projector.apply_event(
            appointment.patient_id,
            WorkflowEvent(EventType.APPOINTMENT_COMPLETED, source=appointment.appointment_id),
            actor,
        )

    sync_patient_list(appointment)
    return appointment


# ── 文档 ──

def _find_document(appointment, document_id):
    for index, document in enumerate(appointment.documents):
        if document.get('documentId') == document_id:
            return index, document
    raise NotFoundError(
        message='Document not found',
        code='DOCUMENT_NOT_FOUND',
        detail={'appointment_id': appointment.appointment_id, 'document_id': document_id},
    )


def _check_document_owner(document, actor):
    if actor.role in DOCUMENT_ADMIN_ROLES:
        return
    if document.get('uploadedBy') == actor.id:
        return
    raise UnauthorizedError(
        message='Only the uploader, clinic or assigner may change this document',
        code='NOT_DOCUMENT_OWNER',
        detail={'document_id': document.get('documentId')},
    )


@retry_on_conflict
def add_document(appointment_id, document, actor):
    appointment = get_appointment(appointment_id)
    entry = {
        'documentId': uuid.uuid4().hex,
        'documentType': document.document_type,
        'fileName': document.file_name,
        'fileUrl': document.file_url,
        'fileSize': document.file_size,
        'mimeType': document.mime_type,
        'description': document.description,
        'uploadedAt': timezone.now().isoformat(),
        'uploadedBy': actor.id,
    }
    appointment.documents = list(appointment.documents) + [entry]
    save_versioned(appointment, ['documents'])
    logger.info("Document %s added to %s", entry['documentId'], appointment.appointment_id)
    return appointment, entry


@retry_on_conflict
def update_document(appointment_id, document_id, changes, actor):
    appointment = get_appointment(appointment_id)
    index, document = _find_document(appointment, document_id)
    _check_document_owner(document, actor)

    editable = ('documentType', 'fileName', 'fileUrl', 'fileSize', 'mimeType', 'description')
    updated = dict(document, **{k: v for k, v in changes.items() if k in editable})
    documents = list(appointment.documents)
    documents[index] = updated
    appointment.documents = documents
    save_versioned(appointment, ['documents'])
    return appointment, updated


@retry_on_conflict
def remove_document(appointment_id, document_id, actor):
    appointment = get_appointment(appointment_id)
    _, document = _find_document(appointment, document_id)
    _check_document_owner(document, actor)

    appointment.documents = [d for d in appointment.documents if d.get('documentId') != document_id]
    save_versioned(appointment, ['documents'])
    logger.info("Document %s removed from %s", document_id, appointment.appointment_id)
    return appointment
