import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Sequence, Tuple

from django.db import DataError, IntegrityError, connection, transaction
from django.utils import timezone

from .exceptions import CodeValidationError
from .models import AuthCode, UploadJob
from .progress import emit_progress, record_batch_progress
from .utils.code_extraction import extract_code
from .utils.row_readers import SourceRow

logger = logging.getLogger(__name__)

PARSE_ERROR = "PARSE_ERROR"
DUPLICATE_CODE = "DUPLICATE_CODE"
WRITE_ERROR = "WRITE_ERROR"
SYSTEM_ERROR = "SYSTEM_ERROR"

LOOKUP_CHUNK_SIZE = 500
CODE_INSERT_COLUMNS = ("code", "brand_id", "product_id", "status", "created_at", "updated_at")

ErrorEntry = Dict[str, object]


def error_entry(row: int, code: str, kind: str, message: str) -> ErrorEntry:
    return {"row": row, "code": code, "kind": kind, "message": message}


class CodeCandidate(NamedTuple):
    row_number: int
    code: str


@dataclass
class BatchStats:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    duplicates: int = 0

    def add(self, other: "BatchStats") -> None:
        self.processed += other.processed
        self.successful += other.successful
        self.failed += other.failed
        self.duplicates += other.duplicates


@dataclass
class WriteOutcome:
    inserted: List[CodeCandidate] = field(default_factory=list)
    rejected: List[CodeCandidate] = field(default_factory=list)
    failed: List[Tuple[CodeCandidate, str]] = field(default_factory=list)


@dataclass
class IngestionResult(BatchStats):
    cancelled: bool = False


class ErrorLog:
    """Error entries for one job, never longer than ``max_errors``."""

    def __init__(self, max_errors: int = 100) -> None:
        self.max_errors = max_errors
        self.entries: List[ErrorEntry] = []

    def extend(self, entries: Iterable[ErrorEntry]) -> None:
        room = self.max_errors - len(self.entries)
        if room > 0:
            self.entries.extend(list(entries)[:room])

    def add_system_error(self, message: str) -> None:
        self.entries.insert(0, error_entry(0, "", SYSTEM_ERROR, message))
        del self.entries[self.max_errors:]


class CodeBatch:
    """Codes and rejected rows read since the last flush."""

    def __init__(self) -> None:
        self.candidates: List[CodeCandidate] = []
        self.rejected: List[ErrorEntry] = []

    def __len__(self) -> int:
        return len(self.candidates) + len(self.rejected)

    def take(self, source_row: SourceRow) -> None:
        if source_row.error is not None:
            self.rejected.append(error_entry(source_row.row_number, "", PARSE_ERROR, source_row.error))
            return
        try:
            code = extract_code(source_row.values or {})
        except CodeValidationError as exc:
            self.rejected.append(error_entry(source_row.row_number, exc.value, exc.kind, str(exc)))
            return
        self.candidates.append(CodeCandidate(source_row.row_number, code))


def find_existing_codes(codes: Sequence[str]) -> set:
    existing = set()
    unique_codes = list(dict.fromkeys(codes))
    for start in range(0, len(unique_codes), LOOKUP_CHUNK_SIZE):
        chunk = unique_codes[start:start + LOOKUP_CHUNK_SIZE]
        existing.update(AuthCode.objects.filter(code__in=chunk).values_list("code", flat=True))
    return existing


def _insert_codes(codes: Sequence[str], brand_id, product_id) -> List[str]:
    """Insert codes, skipping ones that already exist. Returns inserted codes."""
    if not codes:
        return []

    quote = connection.ops.quote_name
    now = connection.ops.adapt_datetimefield_value(timezone.now())
    row_placeholder = "(" + ", ".join(["%s"] * len(CODE_INSERT_COLUMNS)) + ")"
    params: List[object] = []
    for code in codes:
        params.extend([code, brand_id, product_id, AuthCode.Status.ACTIVE.value, now, now])

    insert_sql = (
        f"INSERT INTO {quote(AuthCode._meta.db_table)} "
        f"({', '.join(quote(column) for column in CODE_INSERT_COLUMNS)}) "
        f"VALUES {', '.join([row_placeholder] * len(codes))} "
        f"ON CONFLICT ({quote('code')}) DO NOTHING "
        f"RETURNING {quote('code')}"
    )
    with connection.cursor() as cursor:
        cursor.execute(insert_sql, params)
        return [row[0] for row in cursor.fetchall()]


def _match_inserted(entries: Sequence[CodeCandidate], inserted_codes: Sequence[str], outcome: WriteOutcome) -> None:
    # Earliest row wins when a code repeats; later copies were skipped by the store.
    remaining = Counter(inserted_codes)
    for entry in entries:
        if remaining[entry.code] > 0:
            remaining[entry.code] -= 1
            outcome.inserted.append(entry)
        else:
            outcome.rejected.append(entry)


def write_codes(entries: Sequence[CodeCandidate], brand_id, product_id=None) -> WriteOutcome:
    """Insert a batch of codes without stopping on uniqueness conflicts.

    Codes the store already holds (including repeats inside ``entries``)
    come back as ``rejected``. A chunk that fails for another reason is
    retried entry by entry so one bad entry only fails itself.
    """
    outcome = WriteOutcome()
    if not entries:
        return outcome

    chunk_size = max(1, connection.ops.bulk_batch_size(CODE_INSERT_COLUMNS, entries))
    for start in range(0, len(entries), chunk_size):
        chunk = entries[start:start + chunk_size]
        try:
            with transaction.atomic():
                inserted = _insert_codes([entry.code for entry in chunk], brand_id, product_id)
        except (IntegrityError, DataError) as exc:
            logger.warning("Bulk insert of %s codes failed (%s); retrying individually.", len(chunk), exc)
            for entry in chunk:
                try:
                    with transaction.atomic():
                        inserted = _insert_codes([entry.code], brand_id, product_id)
                except (IntegrityError, DataError) as entry_exc:
                    outcome.failed.append((entry, str(entry_exc)))
                    continue
                _match_inserted([entry], inserted, outcome)
        else:
            _match_inserted(chunk, inserted, outcome)
    return outcome


def flush_batch(batch: CodeBatch, errors: ErrorLog, brand_id, product_id=None) -> BatchStats:
    """Deduplicate a batch against stored codes and write the rest."""
    existing = find_existing_codes([candidate.code for candidate in batch.candidates])
    batch_errors = list(batch.rejected)
    queued: List[CodeCandidate] = []
    duplicates = 0

    for candidate in batch.candidates:
        if candidate.code in existing:
            duplicates += 1
            batch_errors.append(error_entry(candidate.row_number, candidate.code, DUPLICATE_CODE, "Duplicate code"))
        else:
            queued.append(candidate)

    outcome = write_codes(queued, brand_id, product_id)
    for candidate in outcome.rejected:
        batch_errors.append(error_entry(candidate.row_number, candidate.code, DUPLICATE_CODE, "Duplicate code"))
    for candidate, message in outcome.failed:
        batch_errors.append(error_entry(candidate.row_number, candidate.code, WRITE_ERROR, message))

    batch_errors.sort(key=lambda entry: entry["row"])
    errors.extend(batch_errors)

    return BatchStats(
        processed=len(batch),
        successful=len(outcome.inserted),
        failed=len(batch.rejected) + len(outcome.failed),
        duplicates=duplicates + len(outcome.rejected),
    )


def _is_cancelled(job: UploadJob) -> bool:
    return UploadJob.objects.filter(pk=job.pk, status=UploadJob.Status.CANCELLED).exists()


def ingest_rows(
    job: UploadJob,
    rows: Iterable[SourceRow],
    *,
    errors: ErrorLog,
    notifier,
    brand_id,
    product_id=None,
    user_id=None,
) -> IngestionResult:
    """Read rows in batches of ``job.batch_size`` rows, flushing each batch.

    The row iterator is not advanced while a batch is being written. The
    persisted job status is checked before every flush; once the job is
    cancelled no further batch is written.
    """
    result = IngestionResult()
    batch_size = job.batch_size or 1000

    def flush(batch: CodeBatch) -> bool:
        nonlocal job
        if _is_cancelled(job):
            logger.info("Upload job %s was cancelled; stopping before next batch.", job.job_id)
            result.cancelled = True
            return False
        stats = flush_batch(batch, errors, brand_id, product_id)
        result.add(stats)
        job = record_batch_progress(job, stats, errors.entries)
        emit_progress(job, notifier, user_id)
        logger.debug(
            "Upload job %s flushed batch: processed=%s successful=%s failed=%s duplicates=%s",
            job.job_id,
            stats.processed,
            stats.successful,
            stats.failed,
            stats.duplicates,
        )
        return True

    batch = CodeBatch()
    for source_row in rows:
        batch.take(source_row)
        if len(batch) >= batch_size:
            if not flush(batch):
                return result
            batch = CodeBatch()

    if len(batch):
        flush(batch)
    return result

