from django.apps import AppConfig


class GradebooksConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "gradebooks"
