"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
import pytest
from datetime import date
from django.test import Client

import factory
from clinic.auth import Actor
from clinic.models import Appointment, Lab, Patient, Prescription, StaffUser


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class LabFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Lab
        django_get_or_create = ('lab_id',)

    lab_id = 'LAB001'
    name = 'Central Lab'


class StaffUserFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = StaffUser

    email = factory.Sequence(lambda n: f'staff{n}@clinic.test')
    role = 'clinic'
    first_name = 'Meera'
    last_name = 'Iyer'
    lab = factory.SubFactory(LabFactory)


class DoctorFactory(StaffUserFactory):
    role = 'doctor'
    first_name = factory.Sequence(lambda n: f'Arjun{n}')
    last_name = 'Shah'


class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    patient_id = factory.Sequence(lambda n: f'{9000000000 + n}')
    lab = factory.SubFactory(LabFactory)
    personal_info = factory.LazyFunction(lambda: {'fullName': 'Asha Rao', 'gender': 'Female'})
    contact_info = factory.LazyAttribute(lambda o: {'phone': o.patient_id})


class AppointmentFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Appointment

    appointment_id = factory.Sequence(lambda n: f'APT-LAB001-20200101-{n + 1:03d}')
    patient = factory.SubFactory(PatientFactory)
    lab = factory.SelfAttribute('patient.lab')
    scheduled_date = factory.LazyFunction(date.today)
    scheduled_time = '10:30'


class PrescriptionFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Prescription

    prescription_code = factory.Sequence(lambda n: f'RX-LAB001-20200101-{n + 1:03d}')
    patient = factory.SubFactory(PatientFactory)
    doctor = factory.SubFactory(DoctorFactory)
    lab = factory.SelfAttribute('patient.lab')
    medicines = factory.LazyFunction(lambda: [{'medicineName': 'Paracetamol', 'dosage': '500mg'}])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def actor_for(user):
    return Actor(id=str(user.id), role=user.role)


def actor_headers(actor):
    """Django test client 的 header kwargs。"""
    return {'HTTP_X_ACTOR_ID': actor.id, 'HTTP_X_ACTOR_ROLE': actor.role}


@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def lab(db):
    return LabFactory()


@pytest.fixture
def doctor(lab):
    return DoctorFactory(lab=lab)


@pytest.fixture
def clinic_actor(lab):
    return actor_for(StaffUserFactory(role='clinic', lab=lab))


@pytest.fixture
def assigner_actor(lab):
    return actor_for(StaffUserFactory(role='assigner', lab=lab))


@pytest.fixture
def doctor_actor(doctor):
    return actor_for(doctor)


@pytest.fixture
def patient(lab):
    return PatientFactory(patient_id='9876543210', lab=lab)


@pytest.fixture
def appointment(patient):
    return AppointmentFactory(patient=patient)


@pytest.fixture
def sample_registration_payload():
    """Minimal valid payload for POST /api/patients/."""
    return {
        'patientId': '9876543210',
        'labId': 'LAB001',
        'personalInfo': {
            'fullName': 'Asha Rao',
            'dateOfBirth': '1990-04-02',
            'gender': 'Female',
        },
        'contactInfo': {
            'email': 'asha@example.com',
        },
    }
