import logging
from typing import Dict, List, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.db.models import Case, F, IntegerField, Value, When
from django.utils import timezone

from .models import UploadJob

logger = logging.getLogger(__name__)

ProgressPayload = Dict[str, Optional[object]]

PROGRESS_EVENT_TYPE = "bulk_upload.progress"


def user_group_name(user_id) -> str:
    return f"user_{user_id}"


class ChannelsProgressNotifier:
    """Push progress events to the owning user's channel group.

    Delivery is best effort: a missing user, a missing channel layer or a
    failing send is logged and ignored. When bound to a Celery task the
    payload is also published as the task's ``PROGRESS`` state
    (skipped for eager runs).
    """

    def __init__(self, task=None) -> None:
        self.task = task

    def publish(self, user_id, payload: ProgressPayload) -> ProgressPayload:
        request = getattr(self.task, "request", None)
        if request is not None and request.id and not getattr(request, "is_eager", False):
            try:
                self.task.update_state(state="PROGRESS", meta=payload)
            except Exception:
                logger.exception("Failed to update task state for upload %s", payload.get("job_id"))

        if user_id is None:
            return payload
        try:
            channel_layer = get_channel_layer()
            if channel_layer is not None:
                async_to_sync(channel_layer.group_send)(
                    user_group_name(user_id),
                    {"type": PROGRESS_EVENT_TYPE, "payload": payload},
                )
        except Exception:
            logger.exception("Failed to publish progress via Channels for user %s", user_id)
        return payload


def build_progress_event(job: UploadJob, error_limit: Optional[int] = None) -> ProgressPayload:
    if error_limit is None:
        error_limit = getattr(settings, "CODE_UPLOAD_EVENT_ERROR_LIMIT", 10)
    return {
        "job_id": job.job_id,
        "status": job.status,
        "progress": job.progress_snapshot(),
        "errors": job.error_sample(error_limit),
    }


def emit_progress(job: UploadJob, notifier, user_id=None) -> ProgressPayload:
    payload = build_progress_event(job)
    return notifier.publish(user_id if user_id is not None else job.user_id, payload)


def record_batch_progress(job: UploadJob, stats, errors: List[Dict[str, object]]) -> UploadJob:
    """Add one batch's counters to the job in a single UPDATE.

    ``percentage`` is recomputed from the new ``processed`` value in the same
    statement, rounding half up with integer arithmetic.
    """
    processed = F("processed") + stats.processed
    UploadJob.objects.filter(pk=job.pk).update(
        processed=processed,
        successful=F("successful") + stats.successful,
        failed=F("failed") + stats.failed,
        duplicates=F("duplicates") + stats.duplicates,
        percentage=Case(
            When(total__gt=0, then=(processed * 200 + F("total")) / (F("total") * 2)),
            default=Value(0),
            output_field=IntegerField(),
        ),
        errors_json=errors,
        updated_at=timezone.now(),
    )
    job.refresh_from_db()
    return job
