from django.urls import path

from .views_upload import (
    BulkUploadView,
    UploadJobCancelView,
    UploadJobListView,
    UploadJobStatusView,
)

urlpatterns = [
    path("codes/bulk-upload/", BulkUploadView.as_view(), name="code-bulk-upload"),
    path("codes/bulk-upload-jobs/", UploadJobListView.as_view(), name="code-bulk-upload-jobs"),
    path("codes/bulk-upload/<str:job_id>/", UploadJobStatusView.as_view(), name="code-bulk-upload-status"),
    path(
        "codes/bulk-upload/<str:job_id>/cancel/",
        UploadJobCancelView.as_view(),
        name="code-bulk-upload-cancel",
    ),
]
