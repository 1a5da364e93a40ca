"""
Response serializers — ORM 对象 → JSON-able dict（camelCase）。

只负责「输出格式化」，不做任何解析或校验。
输入解析和校验在 clinic/intake/ adapter 系统。
"""

from .services.projector import workflow_bucket


def _iso(value):
    return value.isoformat() if value else None


def _staff_ref(user):
    if user is None:
        return None
    return {'id': str(user.id), 'name': user.display_name, 'role': user.role}


def serialize_patient(patient):
    return {
        'id': str(patient.id),
        'patientId': patient.patient_id,
        'labId': patient.lab_id,
        'status': patient.status,
        'personalInfo': patient.personal_info,
        'contactInfo': patient.contact_info,
        'emergencyContact': patient.emergency_contact,
        'medicalHistory': patient.medical_history,
        'photo': patient.photo,
        'documents': patient.documents,
        'workflowStatus': patient.workflow_status,
        'workflowBucket': workflow_bucket(patient.workflow_status),
        'assignment': patient.assignment,
        'currentVisitId': patient.current_visit_id,
        'appointments': patient.appointments_list,
        'prescriptions': patient.prescriptions_list,
        'createdAt': _iso(patient.created_at),
        'lastTouchedAt': _iso(patient.last_touched_at),
        'lastActivity': _iso(patient.last_activity),
        'version': patient.version,
    }


def serialize_patient_registered(patient, created):
    response = serialize_patient(patient)
    response['created'] = created
    response['message'] = 'Patient registered.' if created else 'Existing patient: new visit started.'
    return response


def serialize_appointment(appointment):
    return {
        'id': str(appointment.id),
        'appointmentId': appointment.appointment_id,
        'patientId': appointment.patient.patient_id,
        'labId': appointment.lab_id,
        'doctor': _staff_ref(appointment.doctor),
        'scheduledDate': _iso(appointment.scheduled_date),
        'scheduledTime': appointment.scheduled_time,
        'duration': appointment.duration,
        'appointmentType': appointment.appointment_type,
        'mode': appointment.mode,
        'status': appointment.status,
        'workflowPhase': appointment.workflow_phase,
        'completionStatus': appointment.completion_status,
        'prescriptions': appointment.prescriptions,
        'vitals': appointment.vitals,
        'chiefComplaints': appointment.chief_complaints,
        'examination': appointment.examination,
        'investigations': appointment.investigations,
        'treatment': appointment.treatment,
        'followUp': appointment.follow_up,
        'documents': appointment.documents,
        'assignedAt': _iso(appointment.assigned_at),
        'assignedBy': str(appointment.assigned_by_id) if appointment.assigned_by_id else None,
        'assignmentNotes': appointment.assignment_notes,
        'completedAt': _iso(appointment.completed_at),
        'createdAt': _iso(appointment.created_at),
        'updatedAt': _iso(appointment.updated_at),
        'version': appointment.version,
    }


def serialize_document(appointment, document):
    return {
        'appointmentId': appointment.appointment_id,
        'document': document,
        'documentCount': len(appointment.documents),
    }


def serialize_prescription(prescription):
    return {
        'id': str(prescription.id),
        'prescriptionCode': prescription.prescription_code,
        'patientId': prescription.patient.patient_id,
        'appointmentId': prescription.appointment.appointment_id if prescription.appointment else None,
        'doctor': _staff_ref(prescription.doctor),
        'labId': prescription.lab_id,
        'medicines': prescription.medicines,
        'tests': prescription.tests,
        'diagnosis': prescription.diagnosis,
        'advice': prescription.advice,
        'downloadHistory': prescription.download_history,
        'cascadeCompletedAt': _iso(prescription.cascade_completed_at),
        'createdAt': _iso(prescription.created_at),
    }


def serialize_cascade_result(result):
    response = {
        'prescription': serialize_prescription(result.prescription),
        'cascadeComplete': result.cascade_complete,
    }
    if result.appointment is not None:
        response['appointment'] = {
            'appointmentId': result.appointment.appointment_id,
            'status': result.appointment.status,
            'workflowPhase': result.appointment.workflow_phase,
        }
    if not result.cascade_complete:
        response['failedStep'] = result.failed_step
        response['message'] = 'Prescription saved. Follow-up updates are queued for reconciliation.'
    return response
