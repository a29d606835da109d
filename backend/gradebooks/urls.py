from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import (
    AssignmentCarnetPdfView,
    AssignmentsZipView,
    BlockTypeRegistryView,
    ClassBatchZipView,
    GradebookExportJobViewSet,
    GradebookTemplateViewSet,
    StudentCarnetPdfView,
    TemplateAssignmentViewSet,
    TemplatePreviewView,
)

router = DefaultRouter()
router.register(r"templates", GradebookTemplateViewSet, basename="gradebook-template")
router.register(r"assignments", TemplateAssignmentViewSet, basename="template-assignment")
router.register(r"export-jobs", GradebookExportJobViewSet, basename="gradebook-export-job")

urlpatterns = [
    path("pdf/student/<int:student_id>/", StudentCarnetPdfView.as_view(), name="carnet-student-pdf"),
    path("pdf/assignment/<str:assignment_id>/", AssignmentCarnetPdfView.as_view(), name="carnet-assignment-pdf"),
    path("pdf/assignments/zip/", AssignmentsZipView.as_view(), name="carnet-assignments-zip"),
    path("pdf/class/<int:class_id>/batch/", ClassBatchZipView.as_view(), name="carnet-class-batch"),
    path(
        "preview/<int:template_id>/<int:student_id>/",
        TemplatePreviewView.as_view(),
        name="carnet-preview",
    ),
    path("preview-empty/<int:template_id>/", TemplatePreviewView.as_view(), name="carnet-preview-empty"),
    path("block-types/", BlockTypeRegistryView.as_view(), name="block-types"),
    path("", include(router.urls)),
]
