import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from django.conf import settings
from django.db import models
from django.utils import timezone

from .exceptions import InvalidStateTransition


def calculate_percentage(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return (processed * 200 + total) // (total * 2)


def elapsed_ms(started_at, ended_at) -> int:
    return int((ended_at - started_at).total_seconds() * 1000)


class Brand(models.Model):
    name = models.CharField(max_length=255)
    total_codes = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class Product(models.Model):
    brand = models.ForeignKey(Brand, related_name="products", on_delete=models.CASCADE)
    name = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return f"{self.name} ({self.brand_id})"


class AuthCode(models.Model):
    MIN_LENGTH = 3
    MAX_LENGTH = 100

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"

    code = models.CharField(max_length=MAX_LENGTH, unique=True)
    brand = models.ForeignKey(Brand, related_name="codes", on_delete=models.CASCADE)
    product = models.ForeignKey(
        Product,
        related_name="codes",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
    )
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["brand", "status"], name="authcode_brand_status_idx"),
            models.Index(fields=["code", "status"], name="authcode_code_status_idx"),
        ]
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.code


class UploadJobQuerySet(models.QuerySet):
    def terminal(self):
        return self.filter(status__in=UploadJob.TERMINAL_STATUSES)

    def delete_expired(self, days_old: int = 30) -> int:
        """Delete finished jobs created more than ``days_old`` days ago."""
        cutoff = timezone.now() - timedelta(days=days_old)
        deleted, _ = self.terminal().filter(created_at__lt=cutoff).delete()
        return deleted


class UploadJob(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    class FileKind(models.TextChoices):
        CSV = "csv", "CSV"
        XLSX = "xlsx", "Excel"

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED, Status.CANCELLED)
    ACTIVE_STATUSES = (Status.PENDING, Status.PROCESSING)

    job_id = models.CharField(max_length=64, unique=True)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="code_upload_jobs",
    )
    # Plain references: a job is kept (and failed) when its brand is missing.
    brand = models.ForeignKey(
        Brand,
        related_name="upload_jobs",
        on_delete=models.DO_NOTHING,
        db_constraint=False,
    )
    product = models.ForeignKey(
        Product,
        related_name="upload_jobs",
        null=True,
        blank=True,
        on_delete=models.DO_NOTHING,
        db_constraint=False,
    )
    filename = models.CharField(max_length=255)
    file_kind = models.CharField(max_length=8, choices=FileKind.choices)
    status = models.CharField(
        max_length=32, choices=Status.choices, default=Status.PENDING, db_index=True
    )

    total = models.IntegerField(default=0)
    processed = models.IntegerField(default=0)
    successful = models.IntegerField(default=0)
    failed = models.IntegerField(default=0)
    duplicates = models.IntegerField(default=0)
    percentage = models.IntegerField(default=0)
    errors_json = models.JSONField(blank=True, default=list)

    batch_size = models.PositiveIntegerField(default=1000)
    max_errors = models.PositiveIntegerField(default=100)

    started_at = models.DateTimeField(null=True, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    duration_ms = models.BigIntegerField(null=True, blank=True)
    avg_throughput = models.IntegerField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = UploadJobQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "status"], name="uploadjob_user_status_idx"),
            models.Index(fields=["brand", "status"], name="uploadjob_brand_status_idx"),
            models.Index(fields=["created_at"], name="uploadjob_created_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.filename} ({self.job_id})"

    @staticmethod
    def generate_job_id() -> str:
        return uuid.uuid4().hex

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def progress_snapshot(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "percentage": self.percentage,
        }

    def summary_snapshot(self) -> Dict[str, Optional[object]]:
        return {
            "start_time": self.started_at.isoformat() if self.started_at else None,
            "end_time": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "avg_throughput": self.avg_throughput,
        }

    def error_sample(self, limit: int) -> List[Dict[str, object]]:
        return list(self.errors_json or [])[:limit]

    def cancel(self) -> "UploadJob":
        """Move a pending or processing job to ``cancelled``.

        The running pipeline notices the new status before its next batch.
        Terminal jobs are left untouched and ``InvalidStateTransition`` is
        raised.
        """
        now = timezone.now()
        updated = UploadJob.objects.filter(
            pk=self.pk, status__in=self.ACTIVE_STATUSES
        ).update(status=self.Status.CANCELLED, ended_at=now, updated_at=now)
        self.refresh_from_db()
        if not updated:
            raise InvalidStateTransition(f"Cannot cancel {self.status} job.")

        if self.started_at:
            self.duration_ms = elapsed_ms(self.started_at, now)
            self.save(update_fields=["duration_ms", "updated_at"])
        return self
