"""
Unit tests for the Completion Cascade.

Celery 任务在这里全部 mock 掉，只验证：
- 正常路径 4 步全部生效
- 中途失败：处方保留、返回 cascade_complete=False、排队补偿
- 重放幂等
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.utils import timezone
from kombu.exceptions import OperationalError

from clinic.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from clinic.models import Appointment, Patient, Prescription, WorkflowStatus as S
from clinic.services.assignment import assign_patient_to_doctor
from clinic.services.cascade import (
    cascade_is_complete,
    create_prescription,
    find_incomplete_cascades,
    get_prescription,
    record_prescription_download,
    resume_cascade,
)
from tests.conftest import AppointmentFactory, PatientFactory

MEDICINES = [{'medicineName': 'Amoxicillin', 'dosage': '500mg', 'frequency': 'TID'}]


def prescribe(patient, actor, appointment=None, **kwargs):
    kwargs.setdefault('medicines', MEDICINES)
    return create_prescription(
        patient.patient_id,
        appointment.appointment_id if appointment else None,
        actor=actor,
        **kwargs,
    )


# -------------------------------------------------------------------
# 正常路径
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestCreatePrescription:

    def test_full_cascade(self, appointment, doctor_actor):
        result = prescribe(appointment.patient, doctor_actor, appointment)

        assert result.cascade_complete is True
        rx = result.prescription
        assert rx.prescription_code.startswith('RX-LAB001-')
        assert rx.prescription_code.endswith('-001')
        assert rx.cascade_completed_at is not None

        stored = Appointment.objects.get(pk=appointment.pk)
        assert stored.status == 'Completed'
        assert stored.completed_at is not None
        assert stored.workflow_phase == 'prescribed'
        assert stored.completion_status['prescriptionIssued']['completed'] is True
        assert stored.prescriptions[0]['prescriptionId'] == str(rx.id)

        patient = Patient.objects.get(pk=appointment.patient_id)
        assert patient.workflow_status == S.REPORTED
        assert patient.prescriptions_list[0]['prescriptionCode'] == rx.prescription_code
        assert cascade_is_complete(Prescription.objects.get(pk=rx.pk))

    @pytest.mark.parametrize('status', ['Cancelled', 'No-Show', 'Rescheduled'])
    def test_closed_appointment_is_forced_completed(self, appointment, doctor_actor, status):
        Appointment.objects.filter(pk=appointment.pk).update(status=status)

        result = prescribe(appointment.patient, doctor_actor, appointment)

        assert result.cascade_complete is True
        assert Appointment.objects.get(pk=appointment.pk).status == 'Completed'

    def test_without_appointment(self, patient, doctor_actor):
        result = prescribe(patient, doctor_actor)

        assert result.cascade_complete is True
        assert result.appointment is None
        assert Patient.objects.get(pk=patient.pk).workflow_status == S.REPORTED

    def test_completed_patient_stays_completed(self, patient, doctor_actor):
        Patient.objects.filter(pk=patient.pk).update(workflow_status=S.COMPLETED)
        prescribe(patient, doctor_actor)
        assert Patient.objects.get(pk=patient.pk).workflow_status == S.COMPLETED

    def test_codes_are_sequential(self, patient, doctor_actor):
        first = prescribe(patient, doctor_actor).prescription
        second = prescribe(patient, doctor_actor).prescription
        assert first.prescription_code[:-3] == second.prescription_code[:-3]
        assert second.prescription_code.endswith('-002')

    def test_clinic_cannot_prescribe(self, patient, clinic_actor):
        with pytest.raises(UnauthorizedError):
            prescribe(patient, clinic_actor)
        assert Prescription.objects.count() == 0

    def test_appointment_of_other_patient(self, patient, doctor_actor):
        other = AppointmentFactory(patient=PatientFactory(lab=patient.lab))
        with pytest.raises(ValidationError) as exc_info:
            prescribe(patient, doctor_actor, other)
        assert exc_info.value.code == 'APPOINTMENT_PATIENT_MISMATCH'


# -------------------------------------------------------------------
# 部分失败 + 补偿
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPartialCascade:

    def test_workflow_step_failure_keeps_prescription(self, appointment, doctor_actor):
        with patch('clinic.services.projector.apply_event', side_effect=ConflictError('busy')), \
             patch('clinic.tasks.resume_prescription_cascade') as mock_task:
            result = prescribe(appointment.patient, doctor_actor, appointment)

        assert result.cascade_complete is False
        assert result.failed_step == 'workflow'
        assert Prescription.objects.filter(pk=result.prescription.pk).exists()
        mock_task.delay.assert_called_once_with(str(result.prescription.id))

        # appointment 那一步已经生效，patient 还没推到 Reported
        assert Appointment.objects.get(pk=appointment.pk).status == 'Completed'
        assert Patient.objects.get(pk=appointment.patient_id).workflow_status == S.NEW

    def test_appointment_step_failure(self, appointment, doctor_actor):
        with patch('clinic.services.cascade._complete_appointment', side_effect=DatabaseError('down')), \
             patch('clinic.tasks.resume_prescription_cascade'):
            result = prescribe(appointment.patient, doctor_actor, appointment)

        assert result.failed_step == 'appointment'
        assert Appointment.objects.get(pk=appointment.pk).status == 'Scheduled'

    def test_broker_down_still_returns(self, patient, doctor_actor):
        with patch('clinic.services.projector.apply_event', side_effect=ConflictError('busy')), \
             patch('clinic.tasks.resume_prescription_cascade') as mock_task:
            mock_task.delay.side_effect = OperationalError('broker unreachable')
            result = prescribe(patient, doctor_actor)

        assert result.cascade_complete is False

    def test_resume_finishes_the_cascade(self, appointment, doctor_actor):
        with patch('clinic.services.projector.apply_event', side_effect=ConflictError('busy')), \
             patch('clinic.tasks.resume_prescription_cascade'):
            result = prescribe(appointment.patient, doctor_actor, appointment)

        pending = find_incomplete_cascades(timezone.now() - timedelta(hours=1))
        assert [p.pk for p in pending] == [result.prescription.pk]

        resumed = resume_cascade(result.prescription.prescription_code)

        assert resumed.cascade_complete is True
        assert Patient.objects.get(pk=appointment.patient_id).workflow_status == S.REPORTED
        assert find_incomplete_cascades(timezone.now() - timedelta(hours=1)) == []

    def test_later_activity_does_not_hide_unfinished_cascade(self, appointment, doctor, doctor_actor,
                                                              assigner_actor):
        with patch('clinic.services.projector.apply_event', side_effect=DatabaseError('down')), \
             patch('clinic.tasks.resume_prescription_cascade'):
            result = prescribe(appointment.patient, doctor_actor, appointment)
        assert result.cascade_complete is False

        # 之后 patient 上的任何事件都会推动 last_activity
        assign_patient_to_doctor(appointment.patient.patient_id, str(doctor.id), '', assigner_actor)

        pending = find_incomplete_cascades(timezone.now() - timedelta(hours=1))
        assert [p.pk for p in pending] == [result.prescription.pk]
        assert not cascade_is_complete(Prescription.objects.get(pk=result.prescription.pk))

        resume_cascade(result.prescription.prescription_code)
        assert Patient.objects.get(pk=appointment.patient_id).workflow_status == S.REPORTED
        assert find_incomplete_cascades(timezone.now() - timedelta(hours=1)) == []

    def test_replay_is_idempotent(self, appointment, doctor_actor):
        rx = prescribe(appointment.patient, doctor_actor, appointment).prescription

        resume_cascade(str(rx.id))
        resume_cascade(str(rx.id))

        assert len(Appointment.objects.get(pk=appointment.pk).prescriptions) == 1
        assert len(Patient.objects.get(pk=appointment.patient_id).prescriptions_list) == 1


# -------------------------------------------------------------------
# 查询 / 下载
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPrescriptionAccess:

    def test_lookup_by_code_or_uuid(self, patient, doctor_actor):
        rx = prescribe(patient, doctor_actor).prescription
        assert get_prescription(rx.prescription_code).pk == rx.pk
        assert get_prescription(str(rx.id)).pk == rx.pk

    def test_lookup_missing(self, db):
        with pytest.raises(NotFoundError):
            get_prescription('RX-NOPE')

    def test_download_only_records_metadata(self, appointment, doctor_actor, clinic_actor):
        rx = prescribe(appointment.patient, doctor_actor, appointment).prescription
        before = Patient.objects.get(pk=appointment.patient_id)

        record_prescription_download(rx.prescription_code, clinic_actor)
        updated = record_prescription_download(rx.prescription_code, clinic_actor)

        assert updated.download_history['downloadCount'] == 2
        assert updated.download_history['downloadedBy'] == clinic_actor.id
        after = Patient.objects.get(pk=appointment.patient_id)
        assert after.workflow_status == before.workflow_status
        assert after.version == before.version
        assert updated.medicines == MEDICINES
