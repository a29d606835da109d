from django.contrib import admin

from .models import (
    Category,
    Competency,
    Enrollment,
    SchoolClass,
    SchoolYear,
    Student,
    StudentCompetencyStatus,
    StudentSignature,
)


@admin.register(SchoolYear)
class SchoolYearAdmin(admin.ModelAdmin):
    list_display = ("name", "start_date", "end_date", "active", "active_semester", "sequence")
    list_filter = ("active",)


@admin.register(SchoolClass)
class SchoolClassAdmin(admin.ModelAdmin):
    list_display = ("name", "level", "school_year")
    list_filter = ("level", "school_year")
    search_fields = ("name",)


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ("first_name", "last_name", "level", "date_of_birth", "school_year")
    list_filter = ("level", "school_year")
    search_fields = ("first_name", "last_name")


@admin.register(Enrollment)
class EnrollmentAdmin(admin.ModelAdmin):
    list_display = ("student", "school_class", "school_year", "status")
    list_filter = ("status", "school_year")


admin.site.register(Category)
admin.site.register(Competency)
admin.site.register(StudentCompetencyStatus)
admin.site.register(StudentSignature)
