"""
Assignment Manager — 把 Patient（以及某个 Appointment）绑定到医生。

Patient.assignment 是"默认医生"，Appointment.doctor 是"这一次的医生"。
assign_doctor_to_appointment 默认两边一起改，保持同步。
"""

import logging

from django.conf import settings
from django.utils import timezone

from ..auth import require_role
from ..datewindow import DateWindow
from .directory import get_assignable_doctor, get_patient
from .lifecycle import ASSIGN_ROLES, assign_doctor
from .projector import EventType, WorkflowEvent, project, stage
from .store import retry_on_conflict, save_versioned

logger = logging.getLogger(__name__)


def has_other_active_doctor(patient, exclude_pk=None, now=None):
    """
    最近 N 天（默认 30）内，这个 patient 还有没有别的 appointment 挂着医生。

    没有"当前有效分配数"这种字段，用时间窗口近似。
    """
    now = now or timezone.now()
    days = getattr(settings, 'ASSIGNMENT_LOOKBACK_DAYS', 30)
    window = DateWindow(now, settings.CLINIC_UTC_OFFSET_MINUTES)
    start, _ = window.lookback(days)
    start_day = start.astimezone(window.tz).date()

    queryset = patient.appointments.filter(
        doctor__isnull=False,
        scheduled_date__gte=start_day,
    )
    if exclude_pk is not None:
        queryset = queryset.exclude(pk=exclude_pk)
    return queryset.exists()


@retry_on_conflict
def assign_patient_to_doctor(patient_id, doctor_id, notes='', actor=None, exclude_appointment=None):
    """
    doctor_id 有值 → 写 assignment + DoctorAssigned（同一个医生重复分配、状态不会变时只刷新 notes / 时间）
    doctor_id 为空 → 清 assignment + DoctorUnassigned（30 天内别的医生还在就不降级）
    assignment 和 workflow_status 在同一次 versioned 写入里落库。
    """
    require_role(actor, ASSIGN_ROLES, 'assign patients')

    patient = get_patient(patient_id)
    now = timezone.now()

    if doctor_id:
        doctor = get_assignable_doctor(doctor_id)
        unchanged = (patient.assignment or {}).get('doctorId') == str(doctor.id)
        patient.assignment = {
            'doctorId': str(doctor.id),
            'doctorName': doctor.display_name,
            'assignedBy': actor.id,
            'assignedAt': now.isoformat(),
            'notes': notes or '',
        }
        event = WorkflowEvent(EventType.DOCTOR_ASSIGNED, source=f'doctor:{doctor.id}')
        if unchanged and project(patient.workflow_status, event) == patient.workflow_status:
            patient.last_touched_at = now
            save_versioned(patient, ['assignment', 'last_touched_at'])
            logger.info("Patient %s already assigned to %s, notes refreshed", patient.patient_id, doctor.id)
            return patient
    else:
        patient.assignment = None
        event = WorkflowEvent(
            EventType.DOCTOR_UNASSIGNED,
            other_doctor_active=has_other_active_doctor(patient, exclude_appointment, now),
            source='unassign',
        )

    fields = ['assignment'] + stage(patient, event, now)
    save_versioned(patient, fields)

    logger.info(
        "Patient %s assignment -> %s (workflow %s)",
        patient.patient_id, (patient.assignment or {}).get('doctorId', 'none'), patient.workflow_status,
    )
    return patient


def assign_doctor_to_appointment(appointment_id, doctor_id, notes='', actor=None,
                                 update_patient_assignment=True):
    require_role(actor, ASSIGN_ROLES, 'assign doctors')

    appointment = assign_doctor(appointment_id, doctor_id, notes, actor)

    if update_patient_assignment:
        patient_notes = f"Assigned via appointment {appointment.appointment_id}."
        if notes:
            patient_notes = f"{patient_notes} {notes}"
        assign_patient_to_doctor(
            appointment.patient.patient_id,
            doctor_id,
            patient_notes,
            actor,
            exclude_appointment=appointment.pk,
        )

    return appointment
