"""
Completion Cascade — 开处方触发的一串跨 aggregate 写入。

顺序固定：
  1. 写 Prescription（持久化锚点，之后任何一步失败都不回滚它）
  2. Appointment：挂处方引用、强制 Completed、prescriptionIssued、phase ≥ prescribed
  3. Patient 列表：appointments_list 条目刷新 + prescriptions_list 追加
  4. Patient workflow：PrescriptionIssued → Reported（已经 Completed 的不动），
     然后在 Prescription 上写 cascade_completed_at

2–4 全部幂等，可以被 reconciliation 任意次重放。
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError
from django.utils import timezone
from kombu.exceptions import OperationalError

from ..auth import require_role
from ..datewindow import DateWindow
from ..exceptions import BaseAppException, NotFoundError, PartialCascadeFailure, ValidationError
from ..models import Appointment, AppointmentStatus, Prescription, WorkflowPhase
from . import projector
from .directory import get_patient, get_staff
from .lifecycle import advance_phase, get_appointment, mark_completed
from .projector import EventType, WorkflowEvent
from .store import create_with_sequence, retry_on_conflict, save_versioned

logger = logging.getLogger(__name__)

PRESCRIBE_ROLES = ('doctor', 'jrdoctor')


@dataclass
class CascadeResult:
    prescription: Prescription
    appointment: Optional[Appointment]
    cascade_complete: bool
    failed_step: Optional[str] = None


def get_prescription(prescription_id):
    """按 RX-... 编号或 UUID 查找。"""
    queryset = Prescription.objects.select_related('patient', 'appointment', 'doctor', 'lab')
    prescription = queryset.filter(prescription_code=prescription_id).first()
    if prescription is None:
        try:
            prescription = queryset.filter(pk=prescription_id).first()
        except (ValueError, DjangoValidationError):
            prescription = None
    if prescription is None:
        raise NotFoundError(
            message='Prescription not found',
            code='PRESCRIPTION_NOT_FOUND',
            detail={'prescription_id': str(prescription_id)},
        )
    return prescription


# ── steps 2–4 ──

@retry_on_conflict
def _complete_appointment(prescription):
    """Step 2。已经完成过的 appointment 上重放是 no-op。"""
    appointment = get_appointment(prescription.appointment_id)
    rx_id = str(prescription.id)
    now = timezone.now()
    issuer = str(prescription.doctor_id)

    already_linked = any(p.get('prescriptionId') == rx_id for p in appointment.prescriptions)
    fields = []

    if not already_linked:
        appointment.prescriptions = list(appointment.prescriptions) + [{
            'prescriptionId': rx_id,
            'prescriptionCode': prescription.prescription_code,
            'issuedAt': prescription.created_at.isoformat(),
            'issuedBy': issuer,
            'status': 'Active',
        }]
        fields.append('prescriptions')

    if appointment.status != AppointmentStatus.COMPLETED:
        # 处方即完成：不走 ALLOWED_TRANSITIONS，Cancelled / No-Show 等终态也强制 Completed
        logger.info(
            "Appointment %s status %s -> Completed by prescription %s",
            appointment.appointment_id, appointment.status, prescription.prescription_code,
        )
        appointment.status = AppointmentStatus.COMPLETED
        appointment.completed_at = now
        fields += ['status', 'completed_at']

    if mark_completed(appointment, 'prescriptionIssued', now, issuer):
        fields.append('completion_status')
    if advance_phase(appointment, WorkflowPhase.PRESCRIBED):
        fields.append('workflow_phase')

    if fields:
        save_versioned(appointment, fields)
    return appointment


def _sync_patient_lists(prescription, appointment):
    """Step 3。条目缺失只记日志，不算失败。"""
    if appointment is not None:
        projector.sync_appointment_reference(appointment)
    projector.add_prescription_summary(prescription)


def _project_prescription(prescription):
    """Step 4。"""
    projector.apply_event(
        prescription.patient_id,
        WorkflowEvent(EventType.PRESCRIPTION_ISSUED, source=prescription.prescription_code),
    )
    marked = _mark_cascade_complete(prescription.pk)
    prescription.cascade_completed_at = marked.cascade_completed_at
    prescription.version = marked.version


@retry_on_conflict
def _mark_cascade_complete(prescription_pk):
    prescription = Prescription.objects.get(pk=prescription_pk)
    if prescription.cascade_completed_at is None:
        prescription.cascade_completed_at = timezone.now()
        save_versioned(prescription, ['cascade_completed_at'])
    return prescription


def _run_followups(prescription):
    appointment = None
    step = None
    try:
        if prescription.appointment_id:
            step = 'appointment'
            appointment = _complete_appointment(prescription)
        step = 'patient_lists'
        _sync_patient_lists(prescription, appointment)
        step = 'workflow'
        _project_prescription(prescription)
    except (BaseAppException, DatabaseError) as exc:
        raise PartialCascadeFailure(
            message=f"Cascade for {prescription.prescription_code} stopped at {step}: {exc}",
            prescription_id=str(prescription.id),
            step=step,
            detail={'prescription_code': prescription.prescription_code, 'step': step},
        ) from exc
    return appointment


def _enqueue_resume(prescription):
    from ..tasks import resume_prescription_cascade

    try:
        resume_prescription_cascade.delay(str(prescription.id))
    except OperationalError as exc:
        # broker 不可用：定时的 reconcile_recent_cascades 会兜底
        logger.error(
            "Could not enqueue cascade resume for %s: %s",
            prescription.prescription_code, exc,
        )


# ── 对外操作 ──

def create_prescription(patient_id, appointment_id=None, medicines=None, tests=None,
                        diagnosis=None, advice=None, actor=None):
    require_role(actor, PRESCRIBE_ROLES, 'issue prescriptions')

    patient = get_patient(patient_id)
    doctor = get_staff(actor.id)

    appointment = None
    if appointment_id:
        appointment = get_appointment(appointment_id)
        if appointment.patient_id != patient.pk:
            raise ValidationError(
                message='Appointment belongs to a different patient',
                code='APPOINTMENT_PATIENT_MISMATCH',
                detail={'patient_id': patient_id, 'appointment_id': appointment.appointment_id},
            )

    lab = appointment.lab if appointment else patient.lab
    local_day = DateWindow(timezone.now(), settings.CLINIC_UTC_OFFSET_MINUTES).local_date()
    stem = f"RX-{lab.lab_id}-{local_day:%Y%m%d}"

    # Step 1
    prescription = create_with_sequence(
        Prescription, 'prescription_code', stem,
        patient=patient,
        appointment=appointment,
        doctor=doctor,
        lab=lab,
        medicines=list(medicines or []),
        tests=list(tests or []),
        diagnosis=dict(diagnosis or {}),
        advice=dict(advice or {}),
        created_by=doctor,
    )
    logger.info(
        "Prescription %s issued for patient %s (appointment %s)",
        prescription.prescription_code, patient.patient_id,
        appointment.appointment_id if appointment else '-',
    )

    try:
        appointment = _run_followups(prescription) or appointment
    except PartialCascadeFailure as exc:
        logger.error(
            "Partial cascade for %s at step %s, scheduling repair: %s",
            prescription.prescription_code, exc.step, exc.message,
        )
        _enqueue_resume(prescription)
        return CascadeResult(prescription, appointment, cascade_complete=False, failed_step=exc.step)

    return CascadeResult(prescription, appointment, cascade_complete=True)


def resume_cascade(prescription_id):
    """重放 2–4。失败时 PartialCascadeFailure 直接抛给调用方（Celery 任务会重试）。"""
    prescription = get_prescription(prescription_id)
    appointment = _run_followups(prescription)
    logger.info("Cascade for %s is complete", prescription.prescription_code)
    return CascadeResult(prescription, appointment, cascade_complete=True)


def cascade_is_complete(prescription):
    """判断 2–4 是否都已生效。只认 cascade_completed_at，patient.last_activity 会被后续事件推动。"""
    return prescription.cascade_completed_at is not None


def find_incomplete_cascades(since, patient_id=None):
    queryset = Prescription.objects.select_related('patient', 'appointment').filter(
        created_at__gte=since,
        cascade_completed_at__isnull=True,
    )
    if patient_id:
        queryset = queryset.filter(patient__patient_id=patient_id)
    return list(queryset.order_by('created_at'))


@retry_on_conflict
def record_prescription_download(prescription_id, actor):
    """只记下载元数据，不动任何 workflow 状态。"""
    prescription = get_prescription(prescription_id)
    history = dict(prescription.download_history or {})
    history['downloadCount'] = history.get('downloadCount', 0) + 1
    history['lastDownloadedAt'] = timezone.now().isoformat()
    history['downloadedBy'] = actor.id if actor else None

    prescription.download_history = history
    save_versioned(prescription, ['download_history'])
    return prescription
