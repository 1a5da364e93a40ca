from django.urls import path
from .views import (
    AppointmentAssessmentView,
    AppointmentAssignDoctorView,
    AppointmentDetailView,
    AppointmentDocumentDetailView,
    AppointmentDocumentsView,
    AppointmentStatusView,
    PatientAppointmentsView,
    PatientAssignView,
    PatientCloseView,
    PatientCollectionView,
    PatientDetailView,
    PatientEpisodeView,
    PatientProfileView,
    PatientRepairView,
    PrescriptionCollectionView,
    PrescriptionDetailView,
    PrescriptionDownloadView,
)

urlpatterns = [
    path('patients/', PatientCollectionView.as_view(), name='patient-register'),
    path('patients/<str:patient_id>/', PatientDetailView.as_view(), name='patient-detail'),
    path('patients/<str:patient_id>/profile/', PatientProfileView.as_view(), name='patient-profile'),
    path('patients/<str:patient_id>/episodes/', PatientEpisodeView.as_view(), name='patient-episode'),
    path('patients/<str:patient_id>/close/', PatientCloseView.as_view(), name='patient-close'),
    path('patients/<str:patient_id>/assign/', PatientAssignView.as_view(), name='patient-assign'),
    path('patients/<str:patient_id>/repair/', PatientRepairView.as_view(), name='patient-repair'),
    path('patients/<str:patient_id>/appointments/', PatientAppointmentsView.as_view(), name='patient-appointments'),

    path('appointments/<str:appointment_id>/', AppointmentDetailView.as_view(), name='appointment-detail'),
    path('appointments/<str:appointment_id>/assign-doctor/', AppointmentAssignDoctorView.as_view(),
         name='appointment-assign-doctor'),
    path('appointments/<str:appointment_id>/assessment/', AppointmentAssessmentView.as_view(),
         name='appointment-assessment'),
    path('appointments/<str:appointment_id>/status/', AppointmentStatusView.as_view(), name='appointment-status'),
    path('appointments/<str:appointment_id>/documents/', AppointmentDocumentsView.as_view(),
         name='appointment-documents'),
    path('appointments/<str:appointment_id>/documents/<str:document_id>/', AppointmentDocumentDetailView.as_view(),
         name='appointment-document-detail'),

    path('prescriptions/', PrescriptionCollectionView.as_view(), name='prescription-create'),
    path('prescriptions/<str:prescription_id>/', PrescriptionDetailView.as_view(), name='prescription-detail'),
    path('prescriptions/<str:prescription_id>/downloads/', PrescriptionDownloadView.as_view(),
         name='prescription-download'),
]
