"""
Patient Registration Merge。

同一个 patientId 再次登记有两种含义，拆成三个显式操作：
- create_or_update_patient  新建，或"老病人新一次就诊"：合并资料 + workflow 回到 New
- update_patient_profile    只改资料，不碰 workflow
- start_new_episode         只开新一次就诊：老病人 → Revisited
"""

import logging
from datetime import date

from django.db import IntegrityError, transaction
from django.utils import timezone

from ..auth import require_role
from ..exceptions import ConflictError, ValidationError
from ..intake.base import PATIENT_ID_RE, parse_date
from ..models import Patient, WorkflowStatus
from .directory import get_lab, get_patient
from .projector import EventType, WorkflowEvent, stage
from .store import retry_on_conflict, save_versioned

logger = logging.getLogger(__name__)

REGISTRATION_ROLES = ('clinic', 'assigner')
PROFILE_SECTIONS = ('personal_info', 'contact_info', 'emergency_contact', 'medical_history')


def _check_patient_id(patient_id):
    if not isinstance(patient_id, str) or not PATIENT_ID_RE.match(patient_id):
        raise ValidationError(
            message='patientId must be a 10-digit phone number',
            code='INVALID_PATIENT_ID',
            detail={'patient_id': patient_id},
        )


def compute_age(date_of_birth, today=None):
    dob = parse_date(date_of_birth)
    if dob is None:
        return None
    today = today or date.today()
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))


def merge_section(existing, incoming):
    """字段级合并：提交了的值覆盖，没提交（None / 空串）的保留原值。"""
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        if value is None or value == '':
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_section(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize(patient_id, personal_info, contact_info):
    personal_info = dict(personal_info or {})
    contact_info = dict(contact_info or {})

    age = compute_age(personal_info.get('dateOfBirth'))
    if age is not None:
        personal_info['age'] = age
    # 手机号就是 patientId
    contact_info.setdefault('phone', patient_id)
    return personal_info, contact_info


def _apply_profile(patient, sections, photo, documents):
    """把提交的资料合并进 patient，返回改动了的字段名。"""
    fields = []
    for name in PROFILE_SECTIONS:
        incoming = sections.get(name)
        if incoming:
            setattr(patient, name, merge_section(getattr(patient, name), incoming))
            fields.append(name)
    if photo:
        patient.photo = photo
        fields.append('photo')
    if documents:
        patient.documents = list(patient.documents or []) + list(documents)
        fields.append('documents')
    return fields


@retry_on_conflict
def create_or_update_patient(patient_id, personal_info=None, contact_info=None, emergency_contact=None,
                             medical_history=None, photo=None, documents=None, lab_id=None, actor=None):
    """
    返回 (patient, created)。

    并发时两个请求可能同时走新建分支：后到的撞 unique 约束，
    转成 ConflictError，重试时走更新分支。
    """
    require_role(actor, REGISTRATION_ROLES, 'register patients')
    _check_patient_id(patient_id)
    personal_info, contact_info = _normalize(patient_id, personal_info, contact_info)
    sections = {
        'personal_info': personal_info,
        'contact_info': contact_info,
        'emergency_contact': emergency_contact or {},
        'medical_history': medical_history or {},
    }

    patient = Patient.objects.filter(patient_id=patient_id).first()

    if patient is None:
        if not personal_info.get('fullName'):
            raise ValidationError(
                message='personalInfo.fullName is required for a new patient',
                code='MISSING_FULL_NAME',
                detail={'patient_id': patient_id},
            )
        if not lab_id:
            raise ValidationError(
                message='labId is required for a new patient',
                code='MISSING_LAB',
                detail={'patient_id': patient_id},
            )
        lab = get_lab(lab_id)
        now = timezone.now()
        try:
            with transaction.atomic():
                patient = Patient.objects.create(
                    patient_id=patient_id,
                    lab=lab,
                    photo=photo,
                    documents=list(documents or []),
                    workflow_status=WorkflowStatus.NEW,
                    last_touched_at=now,
                    last_activity=now,
                    **sections,
                )
        except IntegrityError:
            raise ConflictError(
                message=f"Patient {patient_id} was registered concurrently",
                detail={'patient_id': patient_id},
            )
        logger.info("Registered patient %s in lab %s", patient_id, lab.lab_id)
        return patient, True

    # 老病人：新一次就诊
    fields = _apply_profile(patient, sections, photo, documents)
    patient.current_visit_id = None
    fields.append('current_visit_id')
    fields += stage(patient, WorkflowEvent(EventType.EPISODE_STARTED, source='re-registration'))
    save_versioned(patient, fields)

    logger.info("Re-registered patient %s, workflow reset to %s", patient_id, patient.workflow_status)
    return patient, False


@retry_on_conflict
def update_patient_profile(patient_id, personal_info=None, contact_info=None, emergency_contact=None,
                           medical_history=None, photo=None, documents=None, actor=None):
    require_role(actor, REGISTRATION_ROLES, 'edit patient profiles')
    patient = get_patient(patient_id)
    personal_info, contact_info = _normalize(patient_id, personal_info, contact_info)
    sections = {
        'personal_info': personal_info,
        'contact_info': contact_info,
        'emergency_contact': emergency_contact or {},
        'medical_history': medical_history or {},
    }

    fields = _apply_profile(patient, sections, photo, documents)
    patient.last_touched_at = timezone.now()
    fields.append('last_touched_at')
    save_versioned(patient, fields)
    return patient


@retry_on_conflict
def start_new_episode(patient_id, actor=None):
    """有过 appointment 的病人 → Revisited；从没来过的 → New。"""
    require_role(actor, REGISTRATION_ROLES, 'start a new episode')
    patient = get_patient(patient_id)
    returning = patient.appointments.exists()

    patient.current_visit_id = None
    fields = ['current_visit_id'] + stage(
        patient, WorkflowEvent(EventType.EPISODE_STARTED, returning=returning, source='new-episode'),
    )
    save_versioned(patient, fields)
    return patient
