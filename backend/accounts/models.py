from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils.translation import gettext_lazy as _


class User(AbstractUser):
    class Roles(models.TextChoices):
        ADMIN = "admin", _("Admin")
        SUBADMIN = "subadmin", _("Sub-admin")
        TEACHER = "teacher", _("Teacher")
        AEFE = "aefe", _("AEFE")

    role = models.CharField(
        max_length=20,
        choices=Roles.choices,
        default=Roles.TEACHER,
    )
    display_name = models.CharField(max_length=255, blank=True)
    # Live profile signature. Signed documents keep their own snapshot.
    signature_url = models.CharField(max_length=1024, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def signer_name(self) -> str:
        if self.display_name:
            return self.display_name
        full_name = f"{self.first_name} {self.last_name}".strip()
        return full_name or self.username
