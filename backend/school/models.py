from django.db import models
from django.utils.translation import gettext_lazy as _


class SchoolYear(models.Model):
    name = models.CharField(max_length=32, unique=True)
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    active = models.BooleanField(default=False)
    active_semester = models.PositiveSmallIntegerField(default=1)
    sequence = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["sequence", "start_date", "id"]

    def __str__(self) -> str:
        return self.name


class SchoolClass(models.Model):
    name = models.CharField(max_length=120)
    level = models.CharField(max_length=16, blank=True)
    school_year = models.ForeignKey(
        SchoolYear,
        on_delete=models.PROTECT,
        related_name="classes",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name", "id"]

    def __str__(self) -> str:
        return self.name


class Student(models.Model):
    first_name = models.CharField(max_length=150)
    last_name = models.CharField(max_length=150)
    date_of_birth = models.DateField(null=True, blank=True)
    level = models.CharField(max_length=16, blank=True)
    school_year = models.ForeignKey(
        SchoolYear,
        on_delete=models.SET_NULL,
        related_name="students",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["last_name", "first_name", "id"]

    def __str__(self) -> str:
        return self.full_name

    def save(self, *args, **kwargs):
        self.first_name = (self.first_name or "").strip()
        self.last_name = (self.last_name or "").strip()
        self.level = (self.level or "").strip()
        super().save(*args, **kwargs)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def current_enrollment(self):
        return (
            self.enrollments.select_related("school_class", "school_year")
            .filter(status=Enrollment.Status.ACTIVE)
            .order_by("-created_at", "-id")
            .first()
        )


class Enrollment(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", _("Active")
        PROMOTED = "promoted", _("Promoted")
        LEFT = "left", _("Left")

    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="enrollments")
    school_class = models.ForeignKey(
        SchoolClass,
        on_delete=models.PROTECT,
        related_name="enrollments",
        null=True,
        blank=True,
    )
    school_year = models.ForeignKey(
        SchoolYear,
        on_delete=models.PROTECT,
        related_name="enrollments",
        null=True,
        blank=True,
    )
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]


class Category(models.Model):
    name = models.CharField(max_length=200)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["order", "id"]
        verbose_name_plural = "categories"

    def __str__(self) -> str:
        return self.name


class Competency(models.Model):
    category = models.ForeignKey(Category, on_delete=models.CASCADE, related_name="competencies")
    label = models.CharField(max_length=255)
    order = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["order", "id"]
        verbose_name_plural = "competencies"

    def __str__(self) -> str:
        return self.label


class StudentCompetencyStatus(models.Model):
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name="competency_statuses")
    competency = models.ForeignKey(Competency, on_delete=models.CASCADE, related_name="statuses")
    en = models.BooleanField(default=False)
    fr = models.BooleanField(default=False)
    ar = models.BooleanField(default=False)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["student", "competency"],
                name="unique_student_competency_status",
            )
        ]


class StudentSignature(models.Model):
    """Legacy per-student signature pad: ``items`` holds ``{label, url?, dataUrl?}``."""

    student = models.OneToOneField(Student, on_delete=models.CASCADE, related_name="signature_pad")
    items = models.JSONField(default=list, blank=True)
    updated_at = models.DateTimeField(auto_now=True)
