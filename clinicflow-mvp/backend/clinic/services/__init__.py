from .assignment import assign_doctor_to_appointment, assign_patient_to_doctor
from .cascade import (
    CascadeResult,
    create_prescription,
    find_incomplete_cascades,
    get_prescription,
    record_prescription_download,
    resume_cascade,
)
from .directory import get_assignable_doctor, get_lab, get_patient, get_staff
from .lifecycle import (
    add_document,
    assign_doctor,
    get_appointment,
    record_assessment,
    remove_document,
    schedule_appointment,
    update_document,
    update_status,
)
from .projector import apply_event, close_episode, repair_patient_references, workflow_bucket
from .registration import create_or_update_patient, start_new_episode, update_patient_profile
