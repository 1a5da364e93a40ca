import uuid
from django.db import models
from django.utils import timezone


class WorkflowStatus(models.TextChoices):
    NEW = 'New', 'New'
    ASSIGNED = 'Assigned', 'Assigned'
    DOCTOR_OPENED = 'Doctor Opened', 'Doctor Opened'
    IN_PROGRESS = 'In Progress', 'In Progress'
    REPORTED = 'Reported', 'Reported'
    COMPLETED = 'Completed', 'Completed'
    REVISITED = 'Revisited', 'Revisited'


class AppointmentStatus(models.TextChoices):
    SCHEDULED = 'Scheduled', 'Scheduled'
    CONFIRMED = 'Confirmed', 'Confirmed'
    IN_PROGRESS = 'In-Progress', 'In-Progress'
    COMPLETED = 'Completed', 'Completed'
    CANCELLED = 'Cancelled', 'Cancelled'
    NO_SHOW = 'No-Show', 'No-Show'
    RESCHEDULED = 'Rescheduled', 'Rescheduled'


class WorkflowPhase(models.TextChoices):
    REGISTERED = 'registered', 'Registered'
    ASSIGNED = 'assigned', 'Assigned'
    IN_ASSESSMENT = 'in-assessment', 'In assessment'
    DIAGNOSED = 'diagnosed', 'Diagnosed'
    PRESCRIBED = 'prescribed', 'Prescribed'
    COMPLETED = 'completed', 'Completed'


# workflow_phase 的序号，只能往前走
PHASE_ORDER = [
    WorkflowPhase.REGISTERED,
    WorkflowPhase.ASSIGNED,
    WorkflowPhase.IN_ASSESSMENT,
    WorkflowPhase.DIAGNOSED,
    WorkflowPhase.PRESCRIBED,
    WorkflowPhase.COMPLETED,
]

COMPLETION_STEPS = [
    'clinicRegistration',
    'doctorAssessment',
    'vitalsRecorded',
    'diagnosisCompleted',
    'prescriptionIssued',
]


def default_completion_status():
    return {
        step: {'completed': False, 'completedAt': None, 'completedBy': None}
        for step in COMPLETION_STEPS
    }


class VersionedModel(models.Model):
    """Aggregate root with an optimistic-concurrency counter."""

    version = models.PositiveIntegerField(default=1)

    class Meta:
        abstract = True


class Lab(models.Model):
    lab_id = models.CharField(max_length=32, primary_key=True)
    name = models.CharField(max_length=200)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'labs'


class StaffUser(models.Model):
    ROLE_CHOICES = [
        ('clinic', 'Clinic'),
        ('doctor', 'Doctor'),
        ('assigner', 'Assigner'),
        ('jrdoctor', 'Junior doctor'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True)
    role = models.CharField(max_length=20, choices=ROLE_CHOICES)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    is_active = models.BooleanField(default=True)
    lab = models.ForeignKey(Lab, on_delete=models.SET_NULL, null=True, blank=True, related_name='staff')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'staff_users'

    @property
    def display_name(self):
        if self.role == 'doctor':
            return f"Dr. {self.first_name} {self.last_name}"
        return f"{self.first_name} {self.last_name}"


class Patient(VersionedModel):
    STATUS_CHOICES = [
        ('Active', 'Active'),
        ('Inactive', 'Inactive'),
        ('Suspended', 'Suspended'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient_id = models.CharField(max_length=10, unique=True)
    lab = models.ForeignKey(Lab, on_delete=models.PROTECT, related_name='patients')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='Active')

    personal_info = models.JSONField(default=dict, blank=True)
    contact_info = models.JSONField(default=dict, blank=True)
    emergency_contact = models.JSONField(default=dict, blank=True)
    medical_history = models.JSONField(default=dict, blank=True)
    photo = models.TextField(blank=True, null=True)
    documents = models.JSONField(default=list, blank=True)

    workflow_status = models.CharField(
        max_length=20, choices=WorkflowStatus.choices, default=WorkflowStatus.NEW
    )
    assignment = models.JSONField(blank=True, null=True)
    current_visit_id = models.CharField(max_length=64, blank=True, null=True)

    # 反范式缓存，权威数据在 appointments / prescriptions 表
    appointments_list = models.JSONField(default=list, blank=True)
    prescriptions_list = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    last_touched_at = models.DateTimeField(default=timezone.now)
    last_activity = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'patients'


class Appointment(VersionedModel):
    TYPE_CHOICES = [
        ('Consultation', 'Consultation'),
        ('Follow-up', 'Follow-up'),
        ('Check-up', 'Check-up'),
        ('Emergency', 'Emergency'),
        ('Procedure', 'Procedure'),
    ]
    MODE_CHOICES = [
        ('In-person', 'In-person'),
        ('Video Call', 'Video Call'),
        ('Phone Call', 'Phone Call'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    appointment_id = models.CharField(max_length=64, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='appointments')
    doctor = models.ForeignKey(
        StaffUser, on_delete=models.SET_NULL, null=True, blank=True, related_name='doctor_appointments'
    )
    lab = models.ForeignKey(Lab, on_delete=models.PROTECT, related_name='appointments')

    scheduled_date = models.DateField()
    scheduled_time = models.CharField(max_length=5)  # "09:30"
    duration = models.PositiveSmallIntegerField(default=30)
    appointment_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default='Consultation')
    mode = models.CharField(max_length=20, choices=MODE_CHOICES, default='In-person')

    status = models.CharField(
        max_length=20, choices=AppointmentStatus.choices, default=AppointmentStatus.SCHEDULED
    )
    workflow_phase = models.CharField(
        max_length=20, choices=WorkflowPhase.choices, default=WorkflowPhase.REGISTERED
    )
    completion_status = models.JSONField(default=default_completion_status)
    prescriptions = models.JSONField(default=list, blank=True)

    vitals = models.JSONField(default=dict, blank=True)
    chief_complaints = models.JSONField(default=dict, blank=True)
    examination = models.JSONField(default=dict, blank=True)
    investigations = models.JSONField(default=dict, blank=True)
    treatment = models.JSONField(default=dict, blank=True)
    follow_up = models.JSONField(default=dict, blank=True)
    documents = models.JSONField(default=list, blank=True)

    assigned_at = models.DateTimeField(blank=True, null=True)
    assigned_by = models.ForeignKey(
        StaffUser, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    assignment_notes = models.TextField(blank=True, default='')
    completed_at = models.DateTimeField(blank=True, null=True)
    created_by = models.ForeignKey(
        StaffUser, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    last_modified_by = models.ForeignKey(
        StaffUser, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'appointments'
        indexes = [
            models.Index(fields=['patient', 'scheduled_date']),
            models.Index(fields=['doctor', 'scheduled_date']),
            models.Index(fields=['lab', 'status']),
        ]

    @property
    def phase_rank(self):
        return PHASE_ORDER.index(self.workflow_phase)


class Prescription(VersionedModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    prescription_code = models.CharField(max_length=64, unique=True)
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='prescriptions')
    appointment = models.ForeignKey(
        Appointment, on_delete=models.SET_NULL, null=True, blank=True, related_name='issued_prescriptions'
    )
    doctor = models.ForeignKey(StaffUser, on_delete=models.PROTECT, related_name='issued_prescriptions')
    lab = models.ForeignKey(Lab, on_delete=models.PROTECT, related_name='prescriptions')

    # 创建后内容不可变，只有 download_history 会被追加
    medicines = models.JSONField(default=list, blank=True)
    tests = models.JSONField(default=list, blank=True)
    diagnosis = models.JSONField(default=dict, blank=True)
    advice = models.JSONField(default=dict, blank=True)
    download_history = models.JSONField(default=dict, blank=True)
    # step 4 成功后写入；为空说明 cascade 还没走完
    cascade_completed_at = models.DateTimeField(blank=True, null=True)

    created_by = models.ForeignKey(
        StaffUser, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'prescriptions'
