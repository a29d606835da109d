from datetime import date
from io import BytesIO

from django.test import TestCase
from pypdf import PdfReader
from rest_framework import status
from rest_framework.test import APIClient

from accounts.models import User
from school.models import Enrollment, SchoolClass, SchoolYear, Student

from .models import GradebookTemplate, TemplateAssignment


def _pages(text: str) -> list:
    return [{"title": "Bilan", "blocks": [{"type": "dynamic_text", "props": {"text": text, "x": 40, "y": 80}}]}]


def _pdf_text(pdf_bytes: bytes) -> str:
    reader = PdfReader(BytesIO(pdf_bytes))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


class GradebookApiTestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(username="api-admin", password="pass12345", role=User.Roles.ADMIN)
        self.subadmin = User.objects.create_user(
            username="api-subadmin",
            password="pass12345",
            role=User.Roles.SUBADMIN,
        )
        self.teacher = User.objects.create_user(username="api-teacher", password="pass12345", role=User.Roles.TEACHER)
        self.aefe = User.objects.create_user(username="api-aefe", password="pass12345", role=User.Roles.AEFE)

        self.year = SchoolYear.objects.create(name="2024/2025", active=True, sequence=1)
        self.school_class = SchoolClass.objects.create(name="PS-A", level="PS", school_year=self.year)
        self.student = Student.objects.create(
            first_name="Lina",
            last_name="Haddad",
            date_of_birth=date(2019, 3, 5),
            level="PS",
        )
        Enrollment.objects.create(student=self.student, school_class=self.school_class, school_year=self.year)
        self.template = GradebookTemplate.objects.create(
            name="Carnet PS",
            pages=_pages("Eleve {student.firstName} {student.lastName}"),
            created_by=self.admin,
        )
        self.assignment = TemplateAssignment.objects.create(
            template=self.template,
            student=self.student,
            assigned_by=self.admin,
        )


class TemplateApiTests(GradebookApiTestCase):
    def test_admin_creates_template_and_password_is_write_only(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/gradebooks/templates/",
            {"name": "Carnet MS", "pages": _pages("Hello"), "export_password": "secret"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["current_version"], 1)
        self.assertTrue(response.data["has_export_password"])
        self.assertNotIn("export_password", response.data)
        template = GradebookTemplate.objects.get(id=response.data["id"])
        self.assertEqual(template.created_by, self.admin)
        self.assertNotEqual(template.export_password, "secret")
        self.assertTrue(template.check_export_password("secret"))
        self.assertFalse(template.check_export_password("guess"))
        self.assertFalse(template.check_export_password(None))

    def test_clearing_export_password_unprotects_template(self):
        self.template.set_export_password("secret")
        self.template.save()
        self.client.force_authenticate(user=self.admin)
        response = self.client.patch(
            f"/api/gradebooks/templates/{self.template.id}/",
            {"export_password": ""},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["has_export_password"])
        self.template.refresh_from_db()
        self.assertEqual(self.template.export_password, "")
        self.assertTrue(self.template.check_export_password(None))

    def test_unknown_block_type_is_rejected(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/gradebooks/templates/",
            {"name": "Broken", "pages": [{"blocks": [{"type": "video", "props": {}}]}]},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("pages", response.data)

    def test_teacher_reads_but_cannot_write_templates(self):
        self.client.force_authenticate(user=self.teacher)
        listing = self.client.get("/api/gradebooks/templates/")
        self.assertEqual(listing.status_code, status.HTTP_200_OK)
        self.assertEqual([row["name"] for row in listing.data], ["Carnet PS"])

        create = self.client.post("/api/gradebooks/templates/", {"name": "Nope", "pages": []}, format="json")
        self.assertEqual(create.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.aefe)
        self.assertEqual(self.client.get("/api/gradebooks/templates/").status_code, status.HTTP_403_FORBIDDEN)

    def test_listing_paginates_on_request(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.get("/api/gradebooks/templates/", {"page": 1})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 1)

        sized = self.client.get("/api/gradebooks/templates/", {"page_size": 1})
        self.assertEqual(sized.data["count"], 1)
        self.assertEqual(len(sized.data["results"]), 1)

        plain = self.client.get("/api/gradebooks/templates/")
        self.assertIsInstance(plain.data, list)

    def test_layout_edit_bumps_version_and_keeps_history(self):
        self.client.force_authenticate(user=self.subadmin)
        rename = self.client.patch(
            f"/api/gradebooks/templates/{self.template.id}/",
            {"name": "Carnet PS 2024"},
            format="json",
        )
        self.assertEqual(rename.status_code, status.HTTP_200_OK)
        self.assertEqual(rename.data["current_version"], 1)

        edit = self.client.patch(
            f"/api/gradebooks/templates/{self.template.id}/",
            {"pages": _pages("Nouvelle version")},
            format="json",
        )
        self.assertEqual(edit.status_code, status.HTTP_200_OK)
        self.assertEqual(edit.data["current_version"], 2)

        versions = self.client.get(f"/api/gradebooks/templates/{self.template.id}/versions/")
        self.assertEqual(versions.status_code, status.HTTP_200_OK)
        self.assertEqual([entry["version"] for entry in versions.data], [1])
        self.assertEqual(
            versions.data[0]["pages"][0]["blocks"][0]["props"]["text"],
            "Eleve {student.firstName} {student.lastName}",
        )

        self.assignment.refresh_from_db()
        self.assertEqual(self.assignment.template_version, 1)
        repin = self.client.post(f"/api/gradebooks/assignments/{self.assignment.id}/repin/", {}, format="json")
        self.assertEqual(repin.status_code, status.HTTP_200_OK)
        self.assertEqual(repin.data["template_version"], 2)

    def test_block_type_registry(self):
        self.client.force_authenticate(user=self.aefe)
        response = self.client.get("/api/gradebooks/block-types/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        keys = {entry["key"] for entry in response.data}
        self.assertTrue({"text", "table", "signature_box", "promotion_info", "language_toggle_v2"} <= keys)


class AssignmentApiTests(GradebookApiTestCase):
    def test_data_change_bumps_data_version(self):
        self.client.force_authenticate(user=self.teacher)
        url = f"/api/gradebooks/assignments/{self.assignment.id}/"
        response = self.client.patch(url, {"data": {"dropdown_1": "Acquis"}}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["data_version"], 2)

        unchanged = self.client.patch(url, {"data": {"dropdown_1": "Acquis"}}, format="json")
        self.assertEqual(unchanged.data["data_version"], 2)

    def test_template_of_assignment_cannot_change(self):
        other = GradebookTemplate.objects.create(name="Autre", pages=[])
        self.client.force_authenticate(user=self.admin)
        response = self.client.patch(
            f"/api/gradebooks/assignments/{self.assignment.id}/",
            {"template": other.id},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_new_assignment_is_pinned_to_current_version(self):
        other_student = Student.objects.create(first_name="Karim", last_name="Nassar", level="PS")
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/gradebooks/assignments/",
            {"template": self.template.id, "student": other_student.id},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["template_version"], 1)
        self.assertEqual(response.data["assigned_by"], self.admin.id)


class CarnetPdfApiTests(GradebookApiTestCase):
    def test_student_pdf_requires_template_id(self):
        self.client.force_authenticate(user=self.teacher)
        response = self.client.get(f"/api/gradebooks/pdf/student/{self.student.id}/")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "missing_template_id")

    def test_student_pdf_not_found_errors(self):
        self.client.force_authenticate(user=self.teacher)
        missing_student = self.client.get("/api/gradebooks/pdf/student/999999/", {"templateId": self.template.id})
        self.assertEqual(missing_student.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(missing_student.data["error"], "student_not_found")

        bad_template = self.client.get(f"/api/gradebooks/pdf/student/{self.student.id}/", {"templateId": "abc"})
        self.assertEqual(bad_template.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(bad_template.data["error"], "template_not_found")

    def test_student_pdf_download(self):
        self.client.force_authenticate(user=self.teacher)
        response = self.client.get(f"/api/gradebooks/pdf/student/{self.student.id}/", {"templateId": self.template.id})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], "application/pdf")
        self.assertIn('filename="carnet-Haddad-Lina.pdf"', response["Content-Disposition"])
        self.assertEqual(int(response["Content-Length"]), len(response.content))
        text = _pdf_text(response.content)
        self.assertIn("Eleve Lina Haddad", text)
        self.assertIn("Bilan", text)

    def test_wrong_password_downloads_default_carnet(self):
        self.template.set_export_password("secret")
        self.template.save()
        self.client.force_authenticate(user=self.teacher)
        url = f"/api/gradebooks/pdf/student/{self.student.id}/"

        locked = self.client.get(url, {"templateId": self.template.id, "pwd": "guess"})
        self.assertEqual(locked.status_code, status.HTTP_200_OK)
        locked_text = _pdf_text(locked.content)
        self.assertIn("Carnet Scolaire", locked_text)
        self.assertNotIn("Eleve Lina Haddad", locked_text)

        unlocked = self.client.get(url, {"templateId": self.template.id, "pwd": "secret"})
        self.assertIn("Eleve Lina Haddad", _pdf_text(unlocked.content))

    def test_unknown_strategy_is_rejected(self):
        self.client.force_authenticate(user=self.teacher)
        response = self.client.get(
            f"/api/gradebooks/pdf/student/{self.student.id}/",
            {"templateId": self.template.id, "strategy": "bitmap"},
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "invalid_strategy")

    def test_assignment_pdf(self):
        self.client.force_authenticate(user=self.subadmin)
        response = self.client.get(f"/api/gradebooks/pdf/assignment/{self.assignment.id}/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('filename="PS-Lina-Haddad-2024-2025.pdf"', response["Content-Disposition"])
        self.assertTrue(response.content.startswith(b"%PDF"))

        missing = self.client.get("/api/gradebooks/pdf/assignment/not-a-number/")
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(
            missing.data,
            {"error": "assignment_not_found", "message": "Assignment not found: not-a-number"},
        )

    def test_pdf_requires_staff_role(self):
        self.client.force_authenticate(user=self.aefe)
        response = self.client.get(f"/api/gradebooks/pdf/assignment/{self.assignment.id}/")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class PreviewApiTests(GradebookApiTestCase):
    def test_student_preview_is_html_with_page_canvas(self):
        self.client.force_authenticate(user=self.teacher)
        response = self.client.get(f"/api/gradebooks/preview/{self.template.id}/{self.student.id}/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response["Content-Type"].startswith("text/html"))
        html = response.content.decode("utf-8")
        self.assertEqual(html.count('class="page-canvas"'), 1)
        self.assertIn("Eleve Lina Haddad", html)

    def test_empty_preview_leaves_tokens_blank(self):
        self.client.force_authenticate(user=self.teacher)
        response = self.client.get(f"/api/gradebooks/preview-empty/{self.template.id}/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertNotIn("Lina", response.content.decode("utf-8"))

    def test_preview_not_found(self):
        self.client.force_authenticate(user=self.teacher)
        missing_template = self.client.get(f"/api/gradebooks/preview/999999/{self.student.id}/")
        self.assertEqual(missing_template.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(missing_template.data["error"], "template_not_found")

        missing_student = self.client.get(f"/api/gradebooks/preview/{self.template.id}/999999/")
        self.assertEqual(missing_student.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(missing_student.data["error"], "student_not_found")


class HealthCheckTests(TestCase):
    def test_health_check(self):
        response = self.client.get("/api/health/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {"status": "ok"})
