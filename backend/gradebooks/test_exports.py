import base64
from datetime import date, timedelta
from io import BytesIO, StringIO
import shutil
import tempfile
from unittest.mock import MagicMock, patch
import zipfile

from django.core.management import call_command
from django.db import transaction
from django.test import TestCase, override_settings
from django.utils import timezone
from PIL import Image
from rest_framework import status
from rest_framework.test import APIClient

from accounts.models import User
from school.models import Enrollment, SchoolClass, SchoolYear, Student

from .batch_export import BatchExport
from .commands import ImageCommand
from .exceptions import BrowserLaunchError, GradebookRenderError, SigningError
from .export_jobs import execute_export_job_now, prune_export_artifacts, queue_export_job
from .images import ImageLoader
from .interpreter import TemplateInterpreter
from .layout import design_mapper
from .models import GradebookExportJob, GradebookTemplate, TemplateAssignment, TemplateSignature
from .services import load_assignment_carnet, sign_assignment, unsign_assignment
from .tasks import execute_export_job


def _png_data_uri(color) -> tuple[str, bytes]:
    buffer = BytesIO()
    Image.new("RGB", (12, 6), color=color).save(buffer, format="PNG")
    data = buffer.getvalue()
    return f"data:image/png;base64,{base64.b64encode(data).decode('ascii')}", data


def _simple_pages(text: str = "Carnet {student.firstName}") -> list:
    return [{"blocks": [{"type": "dynamic_text", "props": {"text": text, "x": 40, "y": 40}}]}]


def _zip_entries(payload: bytes) -> dict[str, bytes]:
    with zipfile.ZipFile(BytesIO(payload)) as archive:
        return {name: archive.read(name) for name in archive.namelist()}


class GradebookFixtureMixin:
    def _create_fixtures(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(username="carnet-admin", password="pass12345", role=User.Roles.ADMIN)
        self.subadmin = User.objects.create_user(
            username="carnet-subadmin",
            password="pass12345",
            role=User.Roles.SUBADMIN,
            display_name="Mme Karam",
        )
        self.teacher = User.objects.create_user(
            username="carnet-teacher",
            password="pass12345",
            role=User.Roles.TEACHER,
        )
        self.year = SchoolYear.objects.create(name="2024/2025", active=True, sequence=1)
        self.next_year = SchoolYear.objects.create(name="2025/2026", sequence=2)
        self.school_class = SchoolClass.objects.create(name="PS-A", level="PS", school_year=self.year)
        self.lina = Student.objects.create(first_name="Lina", last_name="Haddad", level="PS", date_of_birth=date(2019, 3, 5))
        self.karim = Student.objects.create(first_name="Karim", last_name="Nassar", level="PS")
        for student in (self.lina, self.karim):
            Enrollment.objects.create(student=student, school_class=self.school_class, school_year=self.year)
        self.template = GradebookTemplate.objects.create(
            name="Carnet PS",
            pages=_simple_pages(),
            created_by=self.admin,
        )
        self.lina_assignment = TemplateAssignment.objects.create(template=self.template, student=self.lina)
        self.karim_assignment = TemplateAssignment.objects.create(template=self.template, student=self.karim)


class BatchExportTests(GradebookFixtureMixin, TestCase):
    def setUp(self):
        self._create_fixtures()

    def test_zip_contains_found_carnets_and_missing_ids(self):
        self.client.force_authenticate(user=self.subadmin)
        response = self.client.post(
            "/api/gradebooks/pdf/assignments/zip/",
            {
                "assignmentIds": [str(self.lina_assignment.id), str(self.karim_assignment.id), "999999"],
                "groupLabel": "PS-A",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], "application/zip")
        self.assertIn('filename="carnets-PS-A.zip"', response["Content-Disposition"])

        entries = _zip_entries(b"".join(response.streaming_content))
        self.assertEqual(
            set(entries),
            {
                "info.txt",
                "errors/999999.txt",
                "PS-Lina-Haddad-2024-2025.pdf",
                "PS-Karim-Nassar-2024-2025.pdf",
            },
        )
        info = entries["info.txt"].decode("utf-8")
        self.assertIn("Group: PS-A", info)
        self.assertIn("Requested: 3", info)
        self.assertIn("Found: 2", info)
        self.assertEqual(entries["errors/999999.txt"].decode("utf-8").strip(), "Assignment not found: 999999")
        self.assertTrue(entries["PS-Lina-Haddad-2024-2025.pdf"].startswith(b"%PDF"))

    def test_zip_requires_assignment_ids(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post("/api/gradebooks/pdf/assignments/zip/", {"assignmentIds": []}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "missing_assignment_ids")

    def test_teacher_cannot_start_batch(self):
        self.client.force_authenticate(user=self.teacher)
        response = self.client.post(
            "/api/gradebooks/pdf/assignments/zip/",
            {"assignmentIds": [str(self.lina_assignment.id)]},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    @patch("gradebooks.exporters.get_browser_pool")
    def test_browser_launch_failure_returns_500_before_streaming(self, get_pool_mock):
        get_pool_mock.return_value.ensure_browser.side_effect = BrowserLaunchError()
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/gradebooks/pdf/assignments/zip/",
            {"assignmentIds": [str(self.lina_assignment.id)], "strategy": "browser"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.data["error"], "browser_launch_failed")

        single = self.client.get(
            f"/api/gradebooks/pdf/assignment/{self.lina_assignment.id}/",
            {"strategy": "browser"},
        )
        self.assertEqual(single.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(single.data["error"], "browser_launch_failed")

    def test_failed_render_is_reported_and_batch_continues(self):
        exporter = MagicMock()

        def render(document):
            if document.context.student.first_name == "Karim":
                raise GradebookRenderError("Renderer crashed.", status_code=500)
            return b"%PDF-1.4 stub"

        exporter.render.side_effect = render
        batch = BatchExport(
            [self.lina_assignment.id, self.karim_assignment.id],
            exporter=exporter,
            concurrency=2,
        )
        output = BytesIO()
        summary = batch.write_to(output)
        exporter.prepare.assert_called_once()
        self.assertEqual((summary.succeeded, summary.failed, summary.missing), (1, 1, 0))
        entries = _zip_entries(output.getvalue())
        self.assertEqual(entries[f"errors/{self.karim_assignment.id}.txt"].decode("utf-8").strip(), "Renderer crashed.")
        self.assertEqual(entries["PS-Lina-Haddad-2024-2025.pdf"], b"%PDF-1.4 stub")

    def test_duplicate_filenames_get_numbered(self):
        second_template = GradebookTemplate.objects.create(name="Carnet PS bis", pages=_simple_pages())
        second = TemplateAssignment.objects.create(template=second_template, student=self.lina)
        exporter = MagicMock()
        exporter.render.return_value = b"%PDF-1.4 stub"
        output = BytesIO()
        BatchExport([self.lina_assignment.id, second.id], exporter=exporter, concurrency=1).write_to(output)
        names = set(_zip_entries(output.getvalue()))
        self.assertIn("PS-Lina-Haddad-2024-2025.pdf", names)
        self.assertIn("PS-Lina-Haddad-2024-2025-2.pdf", names)

    def test_class_batch_exports_active_enrollments(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.get(f"/api/gradebooks/pdf/class/{self.school_class.id}/batch/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        names = set(_zip_entries(b"".join(response.streaming_content)))
        self.assertIn("PS-Karim-Nassar-2024-2025.pdf", names)
        self.assertIn("PS-Lina-Haddad-2024-2025.pdf", names)

        missing = self.client.get("/api/gradebooks/pdf/class/999999/batch/")
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(missing.data["error"], "class_not_found")

        empty_class = SchoolClass.objects.create(name="GS-B", level="GS", school_year=self.year)
        empty = self.client.get(f"/api/gradebooks/pdf/class/{empty_class.id}/batch/")
        self.assertEqual(empty.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(empty.data["error"], "missing_assignment_ids")


class ExportJobTests(GradebookFixtureMixin, TestCase):
    def setUp(self):
        self.media_root = tempfile.mkdtemp()
        self.media_override = override_settings(MEDIA_ROOT=self.media_root)
        self.media_override.enable()
        self._create_fixtures()

    def tearDown(self):
        self.media_override.disable()
        shutil.rmtree(self.media_root, ignore_errors=True)
        super().tearDown()

    @patch("gradebooks.views.execute_export_job.delay")
    def test_create_execute_and_download_archive(self, delay_mock):
        delay_mock.side_effect = lambda export_job_id: execute_export_job(export_job_id)
        self.client.force_authenticate(user=self.subadmin)
        response = self.client.post(
            "/api/gradebooks/export-jobs/",
            {"assignmentIds": [str(self.lina_assignment.id), "424242"], "groupLabel": "PS-A"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(response.data["status"], GradebookExportJob.Status.SUCCEEDED)
        self.assertEqual(response.data["execution_metadata"]["succeeded"], 1)
        self.assertEqual(response.data["execution_metadata"]["missing"], 1)
        self.assertEqual(len(response.data["artifact_sha256"]), 64)

        download = self.client.get(f"/api/gradebooks/export-jobs/{response.data['id']}/download/")
        self.assertEqual(download.status_code, status.HTTP_200_OK)
        entries = _zip_entries(b"".join(download.streaming_content))
        self.assertIn("PS-Lina-Haddad-2024-2025.pdf", entries)
        self.assertIn("errors/424242.txt", entries)

    def test_download_before_success_is_404(self):
        export_job = queue_export_job(assignment_ids=[self.lina_assignment.id], requested_by=self.admin)
        self.client.force_authenticate(user=self.admin)
        response = self.client.get(f"/api/gradebooks/export-jobs/{export_job.id}/download/")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["error"], "artifact_not_available")

    def test_execute_is_idempotent_after_success(self):
        export_job = queue_export_job(assignment_ids=[self.lina_assignment.id], requested_by=self.admin)
        first = execute_export_job_now(export_job_id=export_job.id)
        self.assertEqual(first.status, GradebookExportJob.Status.SUCCEEDED)
        second = execute_export_job_now(export_job_id=export_job.id)
        self.assertEqual(second.execution_attempts, 1)
        self.assertEqual(second.artifact_sha256, first.artifact_sha256)

    @patch("gradebooks.exporters.get_browser_pool")
    def test_browser_failure_marks_job_failed(self, get_pool_mock):
        get_pool_mock.return_value.ensure_browser.side_effect = BrowserLaunchError()
        export_job = queue_export_job(
            assignment_ids=[self.lina_assignment.id],
            strategy="browser",
            requested_by=self.admin,
        )
        failed = execute_export_job_now(export_job_id=export_job.id)
        self.assertEqual(failed.status, GradebookExportJob.Status.FAILED)
        self.assertIn("browser", failed.error_detail.lower())
        self.assertEqual(failed.execution_metadata["last_attempt_status"], "failed")
        self.assertFalse(failed.artifact_zip)

    def test_prune_removes_old_artifacts(self):
        export_job = execute_export_job_now(
            export_job_id=queue_export_job(assignment_ids=[self.lina_assignment.id]).id
        )
        GradebookExportJob.objects.filter(id=export_job.id).update(finished_at=timezone.now() - timedelta(days=30))

        dry_count, dry_bytes = prune_export_artifacts(days=14, dry_run=True)
        self.assertEqual(dry_count, 1)
        self.assertEqual(dry_bytes, export_job.artifact_size_bytes)
        self.assertTrue(GradebookExportJob.objects.get(id=export_job.id).artifact_zip)

        stdout = StringIO()
        call_command("prune_export_artifacts", "--days", "14", stdout=stdout)
        self.assertIn("Pruned 1 artifact(s)", stdout.getvalue())
        pruned = GradebookExportJob.objects.get(id=export_job.id)
        self.assertFalse(pruned.artifact_zip)
        self.assertEqual(pruned.artifact_size_bytes, 0)
        self.assertIn("artifact_pruned_at", pruned.execution_metadata)


class SigningTests(GradebookFixtureMixin, TestCase):
    def setUp(self):
        self._create_fixtures()
        self.red_uri, self.red_png = _png_data_uri((200, 0, 0))
        self.blue_uri, self.blue_png = _png_data_uri((0, 0, 200))
        self.subadmin.signature_url = self.red_uri
        self.subadmin.save()
        self.lina_assignment.is_completed_sem1 = True
        self.lina_assignment.save()
        self.template.pages = [
            {"blocks": [{"type": "signature_box", "props": {"x": 10, "y": 10, "label": "Directrice"}}]}
        ]
        self.template.save()

    def _signature_images(self, **kwargs) -> list[bytes]:
        loaded = load_assignment_carnet(self.lina_assignment.id, **kwargs)
        interpreter = TemplateInterpreter(design_mapper(), image_loader=ImageLoader(max_entries=4))
        pages = interpreter.render(loaded.document)
        return [command.data for command in pages[0].commands if isinstance(command, ImageCommand)]

    def test_sign_snapshots_signature_and_records_history(self):
        signature = sign_assignment(self.lina_assignment, signer=self.subadmin, level="PS")
        self.assertEqual(signature.signer_name, "Mme Karam")
        self.assertEqual(signature.school_year_name, "2024/2025")
        self.assertTrue(signature.signature_data.startswith("data:image/png;base64,"))

        self.lina_assignment.refresh_from_db()
        self.assertEqual(self.lina_assignment.status, TemplateAssignment.Status.SIGNED)
        self.assertEqual(self.lina_assignment.data["signatures"][0]["signerName"], "Mme Karam")
        self.assertEqual(self.lina_assignment.data_version, 2)

    def test_signature_snapshot_is_captured_before_locking_the_assignment(self):
        events = []
        real_atomic = transaction.atomic

        def tracking_atomic(*args, **kwargs):
            events.append("atomic")
            return real_atomic(*args, **kwargs)

        def tracking_snapshot(signer):
            events.append("snapshot")
            return self.red_uri

        with patch("gradebooks.services.transaction.atomic", side_effect=tracking_atomic), patch(
            "gradebooks.services._snapshot_signature", side_effect=tracking_snapshot
        ):
            signature = sign_assignment(self.lina_assignment, signer=self.subadmin)

        self.assertEqual(events[0], "snapshot")
        self.assertIn("atomic", events)
        self.assertEqual(signature.signature_data, self.red_uri)

    def test_signature_image_does_not_follow_profile_changes(self):
        sign_assignment(self.lina_assignment, signer=self.subadmin)
        self.subadmin.signature_url = self.blue_uri
        self.subadmin.save()
        self.assertEqual(self._signature_images(), [self.red_png])
        self.assertEqual(self._signature_images(hide_signatures=True), [])

    def test_sign_rules(self):
        with self.assertRaises(SigningError) as raised:
            sign_assignment(self.karim_assignment, signer=self.subadmin)
        self.assertEqual(raised.exception.code, "not_completed_sem1")

        sign_assignment(self.lina_assignment, signer=self.subadmin)
        with self.assertRaises(SigningError) as raised:
            sign_assignment(self.lina_assignment, signer=self.admin)
        self.assertEqual(raised.exception.code, "already_signed")
        self.assertEqual(raised.exception.status_code, 409)

        with self.assertRaises(SigningError) as raised:
            sign_assignment(self.lina_assignment, signer=self.subadmin, signature_type="end_of_year")
        self.assertEqual(raised.exception.code, "not_completed_sem2")

    def test_end_of_year_signature_belongs_to_next_school_year(self):
        self.lina_assignment.is_completed_sem2 = True
        self.lina_assignment.save()
        signature = sign_assignment(self.lina_assignment, signer=self.subadmin, signature_type="end_of_year")
        self.assertEqual(signature.school_year_name, "2025/2026")

    def test_unsign_end_of_year_removes_signer_promotions(self):
        self.lina_assignment.is_completed_sem2 = True
        self.lina_assignment.data = {
            "promotions": [
                {"from": "PS", "to": "MS", "year": "2025/2026", "by": str(self.subadmin.id)},
                {"from": "PS", "to": "MS", "year": "2025/2026", "by": "someone-else"},
            ]
        }
        self.lina_assignment.save()
        sign_assignment(self.lina_assignment, signer=self.subadmin, signature_type="end_of_year")

        deleted = unsign_assignment(self.lina_assignment, signer=self.subadmin, signature_type="end_of_year")
        self.assertEqual(deleted, 1)
        self.lina_assignment.refresh_from_db()
        self.assertEqual([entry["by"] for entry in self.lina_assignment.data["promotions"]], ["someone-else"])
        self.assertEqual(self.lina_assignment.data["signatures"], [])
        self.assertEqual(self.lina_assignment.status, TemplateAssignment.Status.COMPLETED)
        self.assertFalse(TemplateSignature.objects.filter(assignment=self.lina_assignment).exists())

    def test_sign_api_permissions_and_conflict(self):
        url = f"/api/gradebooks/assignments/{self.lina_assignment.id}/sign/"
        self.client.force_authenticate(user=self.teacher)
        self.assertEqual(self.client.post(url, {}, format="json").status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.subadmin)
        created = self.client.post(url, {"type": "standard", "level": "PS"}, format="json")
        self.assertEqual(created.status_code, status.HTTP_201_CREATED)
        self.assertTrue(created.data["has_snapshot"])

        conflict = self.client.post(url, {"type": "standard"}, format="json")
        self.assertEqual(conflict.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(conflict.data["error"], "already_signed")

        unsign = self.client.post(
            f"/api/gradebooks/assignments/{self.lina_assignment.id}/unsign/",
            {"type": "standard"},
            format="json",
        )
        self.assertEqual(unsign.status_code, status.HTTP_200_OK)
        self.assertEqual(unsign.data, {"deleted": 1})
