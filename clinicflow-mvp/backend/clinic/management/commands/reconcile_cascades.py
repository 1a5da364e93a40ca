"""
Management Command: reconcile_cascades

Finds prescriptions whose completion cascade did not finish and replays it,
optionally repairing the patients' denormalized lists as well.

Usage:
    python manage.py reconcile_cascades
    python manage.py reconcile_cascades --hours 72
    python manage.py reconcile_cascades --dry-run
    python manage.py reconcile_cascades --patient 9876543210 --repair-lists
"""

from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from clinic.exceptions import PartialCascadeFailure
from clinic.services.cascade import find_incomplete_cascades, resume_cascade
from clinic.services.projector import repair_patient_references


class Command(BaseCommand):
    help = "Replay unfinished prescription cascades and repair patient reference lists."

    def add_arguments(self, parser):
        parser.add_argument(
            "--hours",
            type=int,
            default=24,
            help="Look back this many hours for prescriptions (default: 24)",
        )
        parser.add_argument(
            "--patient",
            type=str,
            default=None,
            help="Only reconcile this patientId",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="List what would be replayed without writing anything",
        )
        parser.add_argument(
            "--repair-lists",
            action="store_true",
            help="Also re-derive appointments/prescriptions lists of every touched patient",
        )

    def handle(self, *args, **options):
        since = timezone.now() - timedelta(hours=options["hours"])
        pending = find_incomplete_cascades(since, patient_id=options["patient"])

        self.stdout.write(self.style.NOTICE(
            f"{len(pending)} unfinished cascade(s) since {since:%Y-%m-%d %H:%M} UTC"
        ))

        touched = set()
        failed = 0
        for prescription in pending:
            label = f"{prescription.prescription_code} (patient {prescription.patient.patient_id})"
            touched.add(prescription.patient.patient_id)

            if options["dry_run"]:
                self.stdout.write(f"  would replay {label}")
                continue

            try:
                resume_cascade(str(prescription.id))
                self.stdout.write(self.style.SUCCESS(f"  replayed {label}"))
            except PartialCascadeFailure as exc:
                failed += 1
                self.stdout.write(self.style.ERROR(f"  {label} failed at {exc.step}: {exc.message}"))

        if options["patient"]:
            touched.add(options["patient"])

        if options["repair_lists"] and not options["dry_run"]:
            for patient_id in sorted(touched):
                report = repair_patient_references(patient_id)
                status = "repaired" if report.changed else "clean"
                self.stdout.write(f"  lists for {patient_id}: {status}")

        if failed:
            self.stdout.write(self.style.WARNING(f"{failed} cascade(s) still incomplete"))
        else:
            self.stdout.write(self.style.SUCCESS("Done."))
