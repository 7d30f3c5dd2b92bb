import logging
from pathlib import Path
from typing import Dict, Optional

from celery import shared_task
from django.conf import settings
from django.db.models import F
from django.utils import timezone

from .exceptions import BulkUploadError, ReferenceNotFound
from .ingestion import ErrorLog, ingest_rows
from .models import Brand, UploadJob, elapsed_ms
from .progress import ChannelsProgressNotifier, emit_progress
from .utils.row_readers import get_row_reader

logger = logging.getLogger(__name__)

UploadResult = Dict[str, object]


def cleanup_file(file_path: Path) -> None:
    try:
        file_path.unlink(missing_ok=True)
    except OSError:
        logger.exception("Failed to remove uploaded file %s", file_path)


def _throughput(processed: int, duration_ms: int) -> int:
    seconds = duration_ms / 1000
    if seconds <= 0:
        return processed
    return int(processed / seconds + 0.5)


def _build_result(job: UploadJob) -> UploadResult:
    return {
        "job_id": job.job_id,
        "status": job.status,
        "processed": job.processed,
        "successful": job.successful,
        "failed": job.failed,
        "duplicates": job.duplicates,
        "errors": job.error_sample(job.max_errors),
    }


def fail_job(job: UploadJob, errors: ErrorLog, message: str) -> UploadJob:
    job.refresh_from_db()
    errors.add_system_error(message)
    now = timezone.now()
    update = {
        "status": UploadJob.Status.FAILED,
        "ended_at": now,
        "errors_json": errors.entries,
        "updated_at": now,
    }
    if job.started_at:
        update["duration_ms"] = elapsed_ms(job.started_at, now)

    updated = UploadJob.objects.filter(pk=job.pk, status__in=UploadJob.ACTIVE_STATUSES).update(**update)
    if not updated:
        logger.warning("Upload job %s is already %s; not marking it failed.", job.job_id, job.status)
    job.refresh_from_db()
    return job


def _complete_job(job: UploadJob, processed: int) -> UploadJob:
    now = timezone.now()
    duration_ms = elapsed_ms(job.started_at, now)
    updated = UploadJob.objects.filter(pk=job.pk, status=UploadJob.Status.PROCESSING).update(
        status=UploadJob.Status.COMPLETED,
        ended_at=now,
        duration_ms=duration_ms,
        avg_throughput=_throughput(processed, duration_ms),
        updated_at=now,
    )
    job.refresh_from_db()
    if not updated:
        logger.info("Upload job %s finished reading but is %s.", job.job_id, job.status)
    return job


def _run_job(
    job: UploadJob,
    file_path: Path,
    file_kind: str,
    brand_id,
    product_id,
    user_id,
    notifier,
) -> UploadResult:
    errors = ErrorLog(job.max_errors)
    try:
        if not Brand.objects.filter(pk=brand_id).exists():
            raise ReferenceNotFound(f"Brand {brand_id} not found.")

        now = timezone.now()
        started = UploadJob.objects.filter(pk=job.pk, status=UploadJob.Status.PENDING).update(
            status=UploadJob.Status.PROCESSING,
            started_at=now,
            updated_at=now,
        )
        job.refresh_from_db()
        if not started:
            logger.info("Upload job %s is %s; nothing to process.", job.job_id, job.status)
            return _build_result(job)
        emit_progress(job, notifier, user_id)

        reader = get_row_reader(file_kind, file_path)
        total = reader.count_rows()
        UploadJob.objects.filter(pk=job.pk).update(total=total, updated_at=timezone.now())
        job.refresh_from_db()
        logger.info(
            "Upload %s contains %s data rows (batch size %s).",
            job.job_id,
            total,
            job.batch_size,
        )

        result = ingest_rows(
            job,
            reader,
            errors=errors,
            notifier=notifier,
            brand_id=brand_id,
            product_id=product_id,
            user_id=user_id,
        )

        if result.successful:
            Brand.objects.filter(pk=brand_id).update(total_codes=F("total_codes") + result.successful)

        if result.cancelled:
            job.refresh_from_db()
        else:
            job = _complete_job(job, result.processed)
        emit_progress(job, notifier, user_id)
        logger.info(
            "Finished upload job %s status=%s processed=%s successful=%s failed=%s duplicates=%s",
            job.job_id,
            job.status,
            job.processed,
            job.successful,
            job.failed,
            job.duplicates,
        )
    except BulkUploadError as exc:
        logger.error("Upload job %s failed: %s", job.job_id, exc)
        job = fail_job(job, errors, str(exc))
        emit_progress(job, notifier, user_id)
    except Exception as exc:
        logger.exception("Failed to process upload %s", job.job_id)
        job = fail_job(job, errors, str(exc) or exc.__class__.__name__)
        emit_progress(job, notifier, user_id)
    return _build_result(job)


def process_bulk_upload(
    job_id: str,
    file_path: str,
    file_kind: str,
    brand_id,
    product_id=None,
    user_id=None,
    notifier=None,
) -> UploadResult:
    """Run one upload job to a terminal state and delete its source file.

    Raises ``ReferenceNotFound`` only when the job itself does not exist.
    Every other failure is recorded on the job, which ends up ``failed``.
    """
    notifier = notifier or ChannelsProgressNotifier()
    source_path = Path(file_path)
    try:
        job = UploadJob.objects.filter(job_id=job_id).first()
        if job is None:
            logger.warning("UploadJob with job_id=%s not found.", job_id)
            raise ReferenceNotFound(f"Upload job {job_id} not found.")
        return _run_job(job, source_path, file_kind, brand_id, product_id, user_id, notifier)
    finally:
        cleanup_file(source_path)


@shared_task(bind=True, name="codes.process_bulk_upload_task")
def process_bulk_upload_task(
    self,
    job_id: str,
    file_path: str,
    file_kind: str,
    brand_id: int,
    product_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> Optional[UploadResult]:
    """Import a CSV or XLSX file of authentication codes in batches."""
    logger.info(
        "Starting process_bulk_upload_task job_id=%s file_path=%s user_id=%s",
        job_id,
        file_path,
        user_id,
    )
    try:
        return process_bulk_upload(
            job_id,
            file_path,
            file_kind,
            brand_id,
            product_id=product_id,
            user_id=user_id,
            notifier=ChannelsProgressNotifier(task=self),
        )
    except ReferenceNotFound:
        logger.warning("Dropping upload task for missing job %s.", job_id)
        return None


@shared_task(name="codes.cleanup_upload_jobs")
def cleanup_upload_jobs(days_old: Optional[int] = None) -> int:
    if days_old is None:
        days_old = getattr(settings, "CODE_UPLOAD_RETENTION_DAYS", 30)
    deleted = UploadJob.objects.delete_expired(days_old)
    logger.info("Deleted %s upload jobs older than %s days.", deleted, days_old)
    return deleted
