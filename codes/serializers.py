from django.conf import settings
from rest_framework import serializers

from .models import Brand, UploadJob


class UploadJobSerializer(serializers.ModelSerializer):
    brand = serializers.SerializerMethodField()
    progress = serializers.SerializerMethodField()
    errors = serializers.SerializerMethodField()
    summary = serializers.SerializerMethodField()

    class Meta:
        model = UploadJob
        fields = [
            "job_id",
            "status",
            "filename",
            "file_kind",
            "brand",
            "progress",
            "errors",
            "summary",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_brand(self, obj: UploadJob):
        try:
            name = obj.brand.name
        except Brand.DoesNotExist:
            name = None
        return {"id": obj.brand_id, "name": name}

    def get_progress(self, obj: UploadJob):
        return obj.progress_snapshot()

    def get_errors(self, obj: UploadJob):
        return obj.error_sample(getattr(settings, "CODE_UPLOAD_STATUS_ERROR_LIMIT", 50))

    def get_summary(self, obj: UploadJob):
        return obj.summary_snapshot()
