"""
HTTP 入口。

每个 View 只做三件事：
  1. actor_from_request() 拿调用方身份
  2. intake adapter 把 body 变成 dataclass
  3. 调 service，serializer 转成 dict 返回

业务异常一律 raise，由 settings.REST_FRAMEWORK['EXCEPTION_HANDLER'] 统一格式化。
"""

from django.http import JsonResponse
from rest_framework.views import APIView

from . import intake
from .auth import actor_from_request, require_role
from .serializers import (
    serialize_appointment,
    serialize_cascade_result,
    serialize_document,
    serialize_patient,
    serialize_patient_registered,
    serialize_prescription,
)
from .services import (
    add_document,
    assign_doctor_to_appointment,
    assign_patient_to_doctor,
    close_episode,
    create_or_update_patient,
    create_prescription,
    get_appointment,
    get_patient,
    get_prescription,
    record_assessment,
    record_prescription_download,
    remove_document,
    repair_patient_references,
    schedule_appointment,
    start_new_episode,
    update_document,
    update_patient_profile,
    update_status,
)

REPAIR_ROLES = ('clinic', 'assigner')


def _read(kind, request):
    return intake.process(kind, request.body, request.content_type)


# ── Patients ──

class PatientCollectionView(APIView):
    """POST /api/patients/ — 新建，或老病人新一次就诊"""

    def post(self, request):
        actor = actor_from_request(request)
        data = _read('patient_registration', request)

        patient, created = create_or_update_patient(
            data.patient_id,
            personal_info=data.personal_info,
            contact_info=data.contact_info,
            emergency_contact=data.emergency_contact,
            medical_history=data.medical_history,
            photo=data.photo,
            documents=data.documents,
            lab_id=data.lab_id or None,
            actor=actor,
        )
        return JsonResponse(serialize_patient_registered(patient, created), status=201 if created else 200)


class PatientDetailView(APIView):
    def get(self, request, patient_id):
        actor_from_request(request)
        return JsonResponse(serialize_patient(get_patient(patient_id)))


class PatientProfileView(APIView):
    def patch(self, request, patient_id):
        actor = actor_from_request(request)
        data = _read('patient_profile', request)

        patient = update_patient_profile(
            patient_id,
            personal_info=data.personal_info,
            contact_info=data.contact_info,
            emergency_contact=data.emergency_contact,
            medical_history=data.medical_history,
            photo=data.photo,
            documents=data.documents,
            actor=actor,
        )
        return JsonResponse(serialize_patient(patient))


class PatientEpisodeView(APIView):
    def post(self, request, patient_id):
        actor = actor_from_request(request)
        return JsonResponse(serialize_patient(start_new_episode(patient_id, actor=actor)))


class PatientCloseView(APIView):
    def post(self, request, patient_id):
        actor = actor_from_request(request)
        return JsonResponse(serialize_patient(close_episode(patient_id, actor)))


class PatientAssignView(APIView):
    def post(self, request, patient_id):
        actor = actor_from_request(request)
        data = _read('assignment', request)

        patient = assign_patient_to_doctor(patient_id, data.doctor_id, data.notes, actor)
        return JsonResponse(serialize_patient(patient))


class PatientRepairView(APIView):
    def post(self, request, patient_id):
        actor = actor_from_request(request)
        require_role(actor, REPAIR_ROLES, 'repair patient references')

        report = repair_patient_references(patient_id)
        return JsonResponse(report.as_dict())


class PatientAppointmentsView(APIView):
    """POST /api/patients/<patient_id>/appointments/ — 建 appointment"""

    def post(self, request, patient_id):
        actor = actor_from_request(request)
        schedule = _read('schedule', request)

        appointment = schedule_appointment(patient_id, schedule, schedule.seed, actor)
        return JsonResponse(serialize_appointment(appointment), status=201)


# ── Appointments ──

class AppointmentDetailView(APIView):
    def get(self, request, appointment_id):
        actor_from_request(request)
        return JsonResponse(serialize_appointment(get_appointment(appointment_id)))


class AppointmentAssignDoctorView(APIView):
    def put(self, request, appointment_id):
        actor = actor_from_request(request)
        data = _read('assignment', request)

        appointment = assign_doctor_to_appointment(
            appointment_id,
            data.doctor_id,
            data.notes,
            actor,
            update_patient_assignment=data.update_patient_assignment,
        )
        return JsonResponse(serialize_appointment(appointment))


class AppointmentAssessmentView(APIView):
    def put(self, request, appointment_id):
        actor = actor_from_request(request)
        data = _read('assessment', request)

        appointment = record_assessment(appointment_id, data.as_partial(), actor)
        return JsonResponse(serialize_appointment(appointment))


class AppointmentStatusView(APIView):
    def put(self, request, appointment_id):
        actor = actor_from_request(request)
        data = _read('status', request)

        appointment = update_status(appointment_id, data.status, actor)
        return JsonResponse(serialize_appointment(appointment))


class AppointmentDocumentsView(APIView):
    def post(self, request, appointment_id):
        actor = actor_from_request(request)
        data = _read('document', request)

        appointment, document = add_document(appointment_id, data, actor)
        return JsonResponse(serialize_document(appointment, document), status=201)


class AppointmentDocumentDetailView(APIView):
    def patch(self, request, appointment_id, document_id):
        actor = actor_from_request(request)
        data = _read('document_update', request)

        appointment, document = update_document(appointment_id, document_id, data.changes, actor)
        return JsonResponse(serialize_document(appointment, document))

    def delete(self, request, appointment_id, document_id):
        actor = actor_from_request(request)
        remove_document(appointment_id, document_id, actor)
        return JsonResponse({'deleted': document_id})


# ── Prescriptions ──

class PrescriptionCollectionView(APIView):
    """
    POST /api/prescriptions/

    只要处方本身写进去了就返回 201；后续 cascade 没走完时 cascadeComplete=false，
    由后台 reconciliation 补齐。
    """

    def post(self, request):
        actor = actor_from_request(request)
        data = _read('prescription', request)

        result = create_prescription(
            data.patient_id,
            appointment_id=data.appointment_id,
            medicines=data.medicines,
            tests=data.tests,
            diagnosis=data.diagnosis,
            advice=data.advice,
            actor=actor,
        )
        return JsonResponse(serialize_cascade_result(result), status=201)


class PrescriptionDetailView(APIView):
    def get(self, request, prescription_id):
        actor_from_request(request)
        return JsonResponse(serialize_prescription(get_prescription(prescription_id)))


class PrescriptionDownloadView(APIView):
    def post(self, request, prescription_id):
        actor = actor_from_request(request)
        prescription = record_prescription_download(prescription_id, actor)
        return JsonResponse(serialize_prescription(prescription))
