import logging
from pathlib import Path

from django.conf import settings
from django_filters import rest_framework as filters
from rest_framework import generics, pagination, permissions, status
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import InvalidStateTransition
from .ingestion import ErrorLog
from .models import Brand, Product, UploadJob
from .serializers import UploadJobSerializer
from .tasks import cleanup_file, fail_job, process_bulk_upload_task

logger = logging.getLogger(__name__)

FILE_KINDS_BY_EXTENSION = {
    ".csv": UploadJob.FileKind.CSV,
    ".xlsx": UploadJob.FileKind.XLSX,
}


def _request_user(request):
    user = getattr(request, "user", None)
    return user if user is not None and user.is_authenticated else None


class BulkUploadView(APIView):
    parser_classes = [MultiPartParser, FormParser]
    permission_classes = [permissions.AllowAny]

    def post(self, request, *args, **kwargs):
        uploaded_file = request.FILES.get("file")
        if not uploaded_file:
            return Response(
                {"detail": "No file uploaded under 'file' field."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        if uploaded_file.size <= 0:
            return Response({"detail": "Uploaded file is empty."}, status=status.HTTP_400_BAD_REQUEST)

        max_upload_size = getattr(settings, "CODE_UPLOAD_MAX_SIZE", 50 * 1024 * 1024)
        if uploaded_file.size > max_upload_size:
            return Response(
                {"detail": "Uploaded file exceeds the maximum allowed size."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        original_name = uploaded_file.name
        extension = Path(original_name).suffix.lower()
        file_kind = FILE_KINDS_BY_EXTENSION.get(extension)
        if file_kind is None:
            return Response(
                {"detail": "Only .csv and .xlsx files are supported."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        brand_id = request.data.get("brand_id")
        if not brand_id:
            return Response({"detail": "Brand ID is required."}, status=status.HTTP_400_BAD_REQUEST)
        brand = Brand.objects.filter(pk=brand_id).first()
        if brand is None:
            return Response({"detail": "Brand not found."}, status=status.HTTP_404_NOT_FOUND)

        product_id = request.data.get("product_id") or None
        product = None
        if product_id:
            product = Product.objects.filter(pk=product_id, brand=brand).first()
            if product is None:
                return Response({"detail": "Product not found."}, status=status.HTTP_404_NOT_FOUND)

        media_root = Path(getattr(settings, "MEDIA_ROOT", settings.BASE_DIR / "media"))
        uploads_dir = media_root / "uploads"
        uploads_dir.mkdir(parents=True, exist_ok=True)

        job_id = UploadJob.generate_job_id()
        final_path = uploads_dir / f"codes-{job_id}{extension}"

        with final_path.open("wb+") as destination:
            for chunk in uploaded_file.chunks():
                destination.write(chunk)

        user = _request_user(request)
        job = UploadJob.objects.create(
            job_id=job_id,
            user=user,
            brand=brand,
            product=product,
            filename=original_name,
            file_kind=file_kind,
            status=UploadJob.Status.PENDING,
            batch_size=getattr(settings, "CODE_UPLOAD_BATCH_SIZE", 1000),
            max_errors=getattr(settings, "CODE_UPLOAD_MAX_ERRORS", 100),
        )

        try:
            process_bulk_upload_task.delay(
                job.job_id,
                str(final_path),
                file_kind,
                brand.pk,
                product_id=product.pk if product else None,
                user_id=user.pk if user else None,
            )
        except Exception:
            logger.exception("Failed to queue upload job %s", job.job_id)
            fail_job(job, ErrorLog(job.max_errors), "Unable to queue upload for processing.")
            cleanup_file(final_path)
            return Response(
                {"job_id": job.job_id, "detail": "Unable to queue upload for processing."},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )

        logger.info("Queued upload job %s for %s (%s).", job.job_id, original_name, file_kind)

        return Response(
            {"job_id": job.job_id, "status": job.status},
            status=status.HTTP_202_ACCEPTED,
        )


class UploadJobStatusView(APIView):
    permission_classes = [permissions.AllowAny]

    def get(self, request, job_id: str, *args, **kwargs):
        job = UploadJob.objects.filter(job_id=job_id).first()
        if not job:
            return Response({"detail": "Job not found."}, status=status.HTTP_404_NOT_FOUND)
        return Response(UploadJobSerializer(job).data)


class UploadJobCancelView(APIView):
    permission_classes = [permissions.AllowAny]

    def post(self, request, job_id: str, *args, **kwargs):
        job = UploadJob.objects.filter(job_id=job_id).first()
        if not job:
            return Response({"detail": "Job not found."}, status=status.HTTP_404_NOT_FOUND)
        try:
            job.cancel()
        except InvalidStateTransition as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        logger.info("Cancelled upload job %s.", job.job_id)
        return Response(UploadJobSerializer(job).data)

    def patch(self, request, job_id: str, *args, **kwargs):
        return self.post(request, job_id, *args, **kwargs)


class UploadJobFilterSet(filters.FilterSet):
    status = filters.ChoiceFilter(choices=UploadJob.Status.choices)
    brand = filters.NumberFilter(field_name="brand_id")

    class Meta:
        model = UploadJob
        fields = ["status", "brand"]


class UploadJobPagination(pagination.PageNumberPagination):
    page_size = 20
    page_size_query_param = "limit"
    max_page_size = 100


class UploadJobListView(generics.ListAPIView):
    serializer_class = UploadJobSerializer
    permission_classes = [permissions.AllowAny]
    pagination_class = UploadJobPagination
    filter_backends = [filters.DjangoFilterBackend]
    filterset_class = UploadJobFilterSet

    def get_queryset(self):
        queryset = UploadJob.objects.all().order_by("-created_at")
        user = _request_user(self.request)
        if user is not None:
            queryset = queryset.filter(user=user)
        return queryset
