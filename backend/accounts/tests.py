from django.test import TestCase
from rest_framework import status
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient, APIRequestFactory

from .models import User
from .permissions import IsAdmin, IsAdminOrSubAdmin, IsStaffRole


class UserModelTests(TestCase):
    def test_default_role_is_teacher(self):
        user = User.objects.create_user(username="testuser", password="pass12345")
        self.assertEqual(user.role, User.Roles.TEACHER)

    def test_signer_name_prefers_display_name(self):
        user = User.objects.create_user(
            username="karam",
            password="pass12345",
            first_name="Rania",
            last_name="Karam",
        )
        self.assertEqual(user.signer_name, "Rania Karam")
        user.display_name = "Mme Karam"
        self.assertEqual(user.signer_name, "Mme Karam")

    def test_signer_name_falls_back_to_username(self):
        user = User.objects.create_user(username="direction", password="pass12345")
        self.assertEqual(user.signer_name, "direction")


class AuthApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(
            username="teacher-login",
            email="teacher@example.com",
            password="pass12345",
            role=User.Roles.TEACHER,
        )

    def test_login_returns_token_and_user(self):
        response = self.client.post(
            "/api/auth/login/",
            {"username": "teacher-login", "password": "pass12345"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("token", response.data)
        self.assertEqual(response.data["user"]["role"], User.Roles.TEACHER)
        self.assertTrue(Token.objects.filter(user=self.user, key=response.data["token"]).exists())

    def test_login_rejects_bad_credentials(self):
        response = self.client.post(
            "/api/auth/login/",
            {"username": "teacher-login", "password": "wrong"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_logout_deletes_token(self):
        Token.objects.create(user=self.user)
        self.client.force_authenticate(user=self.user)
        response = self.client.post("/api/auth/logout/", {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(Token.objects.filter(user=self.user).exists())

    def test_me_requires_authentication(self):
        response = self.client.get("/api/auth/me/")
        self.assertIn(response.status_code, {status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN})

    def test_me_patch_updates_signature_but_not_role(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.patch(
            "/api/auth/me/",
            {"display_name": "Mme Karam", "signature_url": "/media/signatures/karam.png", "role": "admin"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.user.refresh_from_db()
        self.assertEqual(self.user.display_name, "Mme Karam")
        self.assertEqual(self.user.signature_url, "/media/signatures/karam.png")
        self.assertEqual(self.user.role, User.Roles.TEACHER)


class RolePermissionTests(TestCase):
    def setUp(self):
        self.factory = APIRequestFactory()
        self.users = {
            role: User.objects.create_user(username=f"perm-{role}", password="pass12345", role=role)
            for role in User.Roles.values
        }

    def _allowed(self, permission_class, role: str) -> bool:
        request = self.factory.get("/")
        request.user = self.users[role]
        return permission_class().has_permission(request, None)

    def test_permission_matrix(self):
        self.assertEqual(
            {role for role in User.Roles.values if self._allowed(IsAdmin, role)},
            {"admin"},
        )
        self.assertEqual(
            {role for role in User.Roles.values if self._allowed(IsAdminOrSubAdmin, role)},
            {"admin", "subadmin"},
        )
        self.assertEqual(
            {role for role in User.Roles.values if self._allowed(IsStaffRole, role)},
            {"admin", "subadmin", "teacher"},
        )
