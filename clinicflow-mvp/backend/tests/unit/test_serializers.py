"""
Unit tests for serializer functions.

成功响应里永远没有 type 字段；cascade 未完成时多出 failedStep / message。
"""
import pytest

from clinic.models import WorkflowStatus as S
from clinic.serializers import (
    serialize_appointment,
    serialize_cascade_result,
    serialize_document,
    serialize_patient,
    serialize_patient_registered,
    serialize_prescription,
)
from clinic.services.cascade import CascadeResult
from tests.conftest import AppointmentFactory, PrescriptionFactory


@pytest.mark.django_db
class TestSerializePatient:

    def test_fields(self, patient):
        result = serialize_patient(patient)

        assert result['patientId'] == '9876543210'
        assert result['labId'] == 'LAB001'
        assert result['workflowStatus'] == S.NEW
        assert result['workflowBucket'] == 'pending'
        assert result['appointments'] == []
        assert result['version'] == patient.version
        assert 'type' not in result

    def test_bucket_follows_status(self, patient):
        patient.workflow_status = S.REPORTED
        assert serialize_patient(patient)['workflowBucket'] == 'inprogress'

    @pytest.mark.parametrize('created, message', [
        (True, 'Patient registered.'),
        (False, 'Existing patient: new visit started.'),
    ])
    def test_registered_message(self, patient, created, message):
        result = serialize_patient_registered(patient, created)
        assert result['created'] is created
        assert result['message'] == message


@pytest.mark.django_db
class TestSerializeAppointment:

    def test_unassigned(self, appointment):
        result = serialize_appointment(appointment)

        assert result['appointmentId'] == appointment.appointment_id
        assert result['patientId'] == '9876543210'
        assert result['doctor'] is None
        assert result['scheduledDate'] == appointment.scheduled_date.isoformat()
        assert result['status'] == 'Scheduled'
        assert result['workflowPhase'] == 'registered'
        assert set(result['completionStatus']) >= {'clinicRegistration', 'prescriptionIssued'}

    def test_doctor_reference(self, patient, doctor):
        appointment = AppointmentFactory(patient=patient, doctor=doctor)
        result = serialize_appointment(appointment)
        assert result['doctor'] == {'id': str(doctor.id), 'name': doctor.display_name, 'role': 'doctor'}

    def test_document(self, appointment):
        appointment.documents = [{'documentId': 'd1'}]
        result = serialize_document(appointment, appointment.documents[0])
        assert result == {
            'appointmentId': appointment.appointment_id,
            'document': {'documentId': 'd1'},
            'documentCount': 1,
        }


@pytest.mark.django_db
class TestSerializePrescription:

    def test_without_appointment(self, patient):
        prescription = PrescriptionFactory(patient=patient)
        result = serialize_prescription(prescription)

        assert result['prescriptionCode'] == prescription.prescription_code
        assert result['appointmentId'] is None
        assert result['doctor']['name'].startswith('Dr. ')
        assert result['medicines'][0]['medicineName'] == 'Paracetamol'
        assert result['cascadeCompletedAt'] is None

    def test_complete_cascade(self, appointment):
        prescription = PrescriptionFactory(patient=appointment.patient, appointment=appointment)
        result = serialize_cascade_result(CascadeResult(prescription, appointment, cascade_complete=True))

        assert result['cascadeComplete'] is True
        assert result['appointment']['appointmentId'] == appointment.appointment_id
        assert 'failedStep' not in result
        assert 'message' not in result

    def test_partial_cascade(self, patient):
        prescription = PrescriptionFactory(patient=patient)
        result = serialize_cascade_result(
            CascadeResult(prescription, None, cascade_complete=False, failed_step='workflow'),
        )

        assert result['cascadeComplete'] is False
        assert result['failedStep'] == 'workflow'
        assert 'reconciliation' in result['message']
        assert 'appointment' not in result
        assert 'type' not in result
