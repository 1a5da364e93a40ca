"""
Integration tests — 真实 HTTP 请求打到 DRF View，验证完整流程。

用 Django test Client，走完：
  HTTP Request → urls.py → View → intake → Service → ORM → DB → Response

每个测试验证：status_code + response body 的统一格式。
Celery task 被 mock 掉，不实际连 broker。
"""
import json
from unittest.mock import patch

import pytest

from clinic.exceptions import ConflictError
from clinic.models import Appointment, Patient, Prescription
from tests.conftest import AppointmentFactory, DoctorFactory, actor_headers


# -------------------------------------------------------------------
# Helper
# -------------------------------------------------------------------

def call(api_client, method, url, actor=None, payload=None):
    """快捷方式：发请求，返回 (status_code, body_dict)。"""
    headers = actor_headers(actor) if actor else {}
    kwargs = {}
    if payload is not None:
        kwargs = {'data': json.dumps(payload), 'content_type': 'application/json'}
    response = getattr(api_client, method)(url, **kwargs, **headers)
    return response.status_code, json.loads(response.content)


def post_json(api_client, url, actor, payload=None):
    return call(api_client, 'post', url, actor, payload if payload is not None else {})


def put_json(api_client, url, actor, payload):
    return call(api_client, 'put', url, actor, payload)


SCHEDULE = {'scheduledDate': '2026-10-19', 'scheduledTime': '10:30'}


# ===================================================================
# Happy path: 登记 → 预约 → 分配 → 录入 → 处方 → 结案
# ===================================================================

@pytest.mark.django_db
class TestEndToEndWorkflow:

    @patch('clinic.tasks.resume_prescription_cascade')
    def test_full_visit(self, mock_task, api_client, lab, doctor, clinic_actor, assigner_actor,
                        doctor_actor, sample_registration_payload):
        # 1. 登记
        status, body = post_json(api_client, '/api/patients/', clinic_actor, sample_registration_payload)
        assert status == 201
        assert body['created'] is True
        assert body['workflowStatus'] == 'New'
        assert 'type' not in body

        # 2. 预约
        status, body = post_json(api_client, '/api/patients/9876543210/appointments/', clinic_actor, SCHEDULE)
        assert status == 201
        appointment_id = body['appointmentId']
        assert appointment_id.startswith('APT-LAB001-')
        assert body['workflowPhase'] == 'registered'
        assert body['completionStatus']['clinicRegistration']['completed'] is True

        # 3. 分配医生
        status, body = put_json(api_client, f'/api/appointments/{appointment_id}/assign-doctor/',
                                assigner_actor, {'doctorId': str(doctor.id)})
        assert status == 200
        assert body['workflowPhase'] == 'assigned'
        assert body['doctor']['id'] == str(doctor.id)

        _, patient = call(api_client, 'get', '/api/patients/9876543210/', clinic_actor)
        assert patient['workflowStatus'] == 'Assigned'
        assert patient['workflowBucket'] == 'pending'
        assert patient['assignment']['doctorId'] == str(doctor.id)
        assert patient['appointments'][0]['doctorId'] == str(doctor.id)

        # 4. 录入 vitals
        status, body = put_json(api_client, f'/api/appointments/{appointment_id}/assessment/',
                                doctor_actor, {'vitals': {'pulse': 82, 'temperature': 38.2}})
        assert status == 200
        assert body['workflowPhase'] == 'in-assessment'
        assert body['status'] == 'In-Progress'
        assert body['completionStatus']['vitalsRecorded']['completed'] is True

        _, patient = call(api_client, 'get', '/api/patients/9876543210/', clinic_actor)
        assert patient['workflowStatus'] == 'Doctor Opened'
        assert patient['workflowBucket'] == 'inprogress'

        # 5. 开处方
        status, body = post_json(api_client, '/api/prescriptions/', doctor_actor, {
            'patientId': '9876543210',
            'appointmentId': appointment_id,
            'medicines': [{'medicineName': 'Paracetamol', 'dosage': '500mg', 'frequency': '1-0-1'}],
            'diagnosis': {'primary': 'Viral fever'},
        })
        assert status == 201
        assert body['cascadeComplete'] is True
        assert body['appointment']['status'] == 'Completed'
        assert body['appointment']['workflowPhase'] == 'prescribed'
        mock_task.delay.assert_not_called()

        _, patient = call(api_client, 'get', '/api/patients/9876543210/', clinic_actor)
        assert patient['workflowStatus'] == 'Reported'
        assert patient['prescriptions'][0]['prescriptionCode'] == body['prescription']['prescriptionCode']
        assert patient['appointments'][0]['prescriptionIssued'] is True

        # 6. 结案
        status, patient = post_json(api_client, '/api/patients/9876543210/close/', doctor_actor)
        assert status == 200
        assert patient['workflowStatus'] == 'Completed'
        assert patient['workflowBucket'] == 'completed'

        # 7. 老病人再登记：新一次就诊
        status, body = post_json(api_client, '/api/patients/', clinic_actor, sample_registration_payload)
        assert status == 200
        assert body['created'] is False
        assert body['workflowStatus'] == 'New'
        assert Patient.objects.count() == 1

    def test_documents_round(self, api_client, appointment, doctor_actor, clinic_actor):
        url = f'/api/appointments/{appointment.appointment_id}/documents/'
        status, body = post_json(api_client, url, doctor_actor, {
            'documentType': 'lab-report', 'fileName': 'cbc.pdf', 'fileUrl': 'https://files/cbc.pdf',
        })
        assert status == 201
        document_id = body['document']['documentId']

        status, body = call(api_client, 'patch', f'{url}{document_id}/', doctor_actor, {'description': 'fasting'})
        assert status == 200
        assert body['document']['description'] == 'fasting'

        status, body = call(api_client, 'delete', f'{url}{document_id}/', clinic_actor)
        assert status == 200
        assert body == {'deleted': document_id}
        assert Appointment.objects.get(pk=appointment.pk).documents == []

    def test_download_does_not_move_workflow(self, api_client, patient, doctor_actor, clinic_actor):
        _, body = post_json(api_client, '/api/prescriptions/', doctor_actor, {
            'patientId': patient.patient_id, 'tests': [{'testName': 'CBC'}],
        })
        code = body['prescription']['prescriptionCode']

        status, body = post_json(api_client, f'/api/prescriptions/{code}/downloads/', clinic_actor)
        assert status == 200
        assert body['downloadHistory']['downloadCount'] == 1
        assert Patient.objects.get(pk=patient.pk).workflow_status == 'Reported'

    def test_repair_endpoint(self, api_client, appointment, clinic_actor):
        status, body = post_json(api_client, '/api/patients/9876543210/repair/', clinic_actor)
        assert status == 200
        assert body['addedAppointments'] == [appointment.appointment_id]


# ===================================================================
# 部分 cascade
# ===================================================================

@pytest.mark.django_db
class TestPartialCascadeOverHttp:

    @patch('clinic.tasks.resume_prescription_cascade')
    def test_prescription_still_created(self, mock_task, api_client, appointment, doctor_actor):
        with patch('clinic.services.projector.apply_event', side_effect=ConflictError('busy')):
            status, body = post_json(api_client, '/api/prescriptions/', doctor_actor, {
                'patientId': '9876543210',
                'appointmentId': appointment.appointment_id,
                'medicines': [{'medicineName': 'Cetirizine'}],
            })

        assert status == 201
        assert body['cascadeComplete'] is False
        assert body['failedStep'] == 'workflow'
        assert 'type' not in body
        assert Prescription.objects.count() == 1
        mock_task.delay.assert_called_once_with(body['prescription']['id'])


# ===================================================================
# 错误格式
# ===================================================================

@pytest.mark.django_db
class TestErrorResponses:

    def test_missing_actor_headers(self, api_client, patient):
        status, body = call(api_client, 'get', '/api/patients/9876543210/')
        assert status == 403
        assert body['type'] == 'unauthorized'
        assert body['code'] == 'MISSING_ACTOR'

    def test_role_not_allowed(self, api_client, patient, doctor_actor):
        status, body = post_json(api_client, '/api/patients/9876543210/appointments/', doctor_actor, SCHEDULE)
        assert status == 403
        assert body['code'] == 'ROLE_NOT_ALLOWED'

    def test_unknown_patient(self, api_client, lab, clinic_actor):
        status, body = call(api_client, 'get', '/api/patients/1111111111/', clinic_actor)
        assert status == 404
        assert body['type'] == 'not_found'
        assert body['code'] == 'PATIENT_NOT_FOUND'

    def test_invalid_schedule_lists_fields(self, api_client, patient, clinic_actor):
        status, body = post_json(api_client, '/api/patients/9876543210/appointments/', clinic_actor,
                                 {'scheduledDate': 'tomorrow', 'scheduledTime': '7pm'})
        assert status == 400
        assert body['type'] == 'validation_error'
        fields = {e['field'] for e in body['detail']['errors']}
        assert fields == {'scheduledDate', 'scheduledTime'}

    def test_invalid_json(self, api_client, patient, clinic_actor):
        response = api_client.post(
            '/api/patients/9876543210/appointments/', data='{oops', content_type='application/json',
            **actor_headers(clinic_actor),
        )
        assert response.status_code == 400
        assert json.loads(response.content)['code'] == 'INVALID_JSON'

    def test_illegal_status_transition(self, api_client, patient, clinic_actor):
        appointment = AppointmentFactory(patient=patient, status='Completed')
        status, body = put_json(api_client, f'/api/appointments/{appointment.appointment_id}/status/',
                                clinic_actor, {'status': 'Scheduled'})
        assert status == 409
        assert body['type'] == 'block'
        assert body['code'] == 'INVALID_TRANSITION'
        assert body['retryable'] is False

    def test_inactive_doctor(self, api_client, appointment, lab, assigner_actor):
        retired = DoctorFactory(lab=lab, is_active=False)

        status, body = put_json(api_client, f'/api/appointments/{appointment.appointment_id}/assign-doctor/',
                                assigner_actor, {'doctorId': str(retired.id)})
        assert status == 400
        assert body['code'] == 'INVALID_DOCTOR'
        assert body['detail']['reason'] == 'inactive'

    def test_close_before_report(self, api_client, patient, clinic_actor):
        status, body = post_json(api_client, '/api/patients/9876543210/close/', clinic_actor)
        assert status == 409
        assert body['code'] == 'INVALID_TRANSITION'

    def test_conflict_is_retryable(self, api_client, appointment, clinic_actor):
        with patch('clinic.services.lifecycle.save_versioned', side_effect=ConflictError('stale')):
            status, body = put_json(api_client, f'/api/appointments/{appointment.appointment_id}/status/',
                                    clinic_actor, {'status': 'Confirmed'})
        assert status == 409
        assert body['type'] == 'conflict'
        assert body['retryable'] is True
