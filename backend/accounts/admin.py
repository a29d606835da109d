from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import User


@admin.register(User)
class CustomUserAdmin(UserAdmin):
    fieldsets = UserAdmin.fieldsets + (
        (
            "Carnet",
            {
                "fields": (
                    "role",
                    "display_name",
                    "signature_url",
                )
            },
        ),
    )
    list_display = (
        "username",
        "email",
        "role",
        "display_name",
        "is_staff",
    )
