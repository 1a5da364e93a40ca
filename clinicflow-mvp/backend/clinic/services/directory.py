"""Read-only lookups: labs, staff, and patients by business key."""

from django.core.exceptions import ValidationError as DjangoValidationError

from ..exceptions import InvalidDoctorError, NotFoundError
from ..models import Lab, Patient, StaffUser


def get_lab(lab_id):
    try:
        return Lab.objects.get(lab_id=lab_id)
    except Lab.DoesNotExist:
        raise NotFoundError(
            message='Lab not found',
            code='LAB_NOT_FOUND',
            detail={'lab_id': lab_id},
        )


def get_patient(patient_id):
    """按 10 位 patientId 查找。每次都从库里重新读，version 是最新的。"""
    try:
        return Patient.objects.select_related('lab').get(patient_id=patient_id)
    except Patient.DoesNotExist:
        raise NotFoundError(
            message='Patient not found',
            code='PATIENT_NOT_FOUND',
            detail={'patient_id': patient_id},
        )


def _find_staff(user_id):
    try:
        return StaffUser.objects.select_related('lab').get(pk=user_id)
    except (StaffUser.DoesNotExist, DjangoValidationError, ValueError):
        return None


def get_staff(user_id):
    staff = _find_staff(user_id)
    if staff is None:
        raise NotFoundError(
            message='Staff user not found',
            code='STAFF_NOT_FOUND',
            detail={'user_id': str(user_id)},
        )
    return staff


def resolve_staff(actor):
    """Directory record behind an actor, or None when auth knows a user we don't."""
    if actor is None:
        return None
    return _find_staff(actor.id)


def get_assignable_doctor(doctor_id):
    """
    医生校验：存在 + role == doctor + isActive。
    任何一条不满足都是 InvalidDoctorError（400，不可重试）。
    """
    doctor = _find_staff(doctor_id)

    if doctor is None:
        reason = 'not_found'
    elif doctor.role != 'doctor':
        reason = 'not_a_doctor'
    elif not doctor.is_active:
        reason = 'inactive'
    else:
        return doctor

    raise InvalidDoctorError(
        message='Doctor not found or inactive',
        detail={'doctor_id': str(doctor_id), 'reason': reason},
    )
