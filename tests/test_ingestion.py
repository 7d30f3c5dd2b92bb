import pytest
from django.db import IntegrityError

from codes import ingestion
from codes.ingestion import (
    CodeBatch,
    CodeCandidate,
    ErrorLog,
    find_existing_codes,
    flush_batch,
    ingest_rows,
    write_codes,
)
from codes.models import AuthCode, UploadJob
from codes.utils.row_readers import SourceRow


def _rows(*codes, start=1):
    return [SourceRow(start + index, {"code": code}) for index, code in enumerate(codes)]


class TestErrorLog:
    def test_entries_are_capped(self):
        errors = ErrorLog(max_errors=2)
        errors.extend([{"row": n} for n in range(5)])
        errors.extend([{"row": 99}])

        assert [entry["row"] for entry in errors.entries] == [0, 1]

    def test_system_error_goes_first_and_keeps_cap(self):
        errors = ErrorLog(max_errors=2)
        errors.extend([{"row": 1}, {"row": 2}])
        errors.add_system_error("boom")

        assert len(errors.entries) == 2
        assert errors.entries[0] == {"row": 0, "code": "", "kind": "SYSTEM_ERROR", "message": "boom"}


class TestCodeBatch:
    def test_take_sorts_rows_into_candidates_and_rejections(self):
        batch = CodeBatch()
        batch.take(SourceRow(1, {"code": "ABCDEFGH"}))
        batch.take(SourceRow(2, {"code": ""}))
        batch.take(SourceRow(3, {"code": "XY"}))
        batch.take(SourceRow(4, None, "Malformed row: bad quote"))

        assert batch.candidates == [CodeCandidate(1, "ABCDEFGH")]
        assert [entry["kind"] for entry in batch.rejected] == [
            "EMPTY_OR_MISSING_CODE",
            "INVALID_CODE_LENGTH",
            "PARSE_ERROR",
        ]
        assert batch.rejected[1]["code"] == "XY"
        assert len(batch) == 4


@pytest.mark.django_db
class TestWriteCodes:
    def test_inserts_new_codes(self, brand, product):
        outcome = write_codes([CodeCandidate(1, "AAA111"), CodeCandidate(2, "BBB222")], brand.pk, product.pk)

        assert [entry.code for entry in outcome.inserted] == ["AAA111", "BBB222"]
        assert outcome.rejected == []
        stored = AuthCode.objects.get(code="AAA111")
        assert stored.brand_id == brand.pk
        assert stored.product_id == product.pk
        assert stored.status == AuthCode.Status.ACTIVE

    def test_existing_codes_are_rejected_not_raised(self, brand):
        AuthCode.objects.create(code="AAA111", brand=brand)

        outcome = write_codes([CodeCandidate(1, "AAA111"), CodeCandidate(2, "BBB222")], brand.pk)

        assert [entry.code for entry in outcome.inserted] == ["BBB222"]
        assert [entry.code for entry in outcome.rejected] == ["AAA111"]
        assert AuthCode.objects.count() == 2

    def test_repeat_within_batch_keeps_first_occurrence(self, brand):
        outcome = write_codes([CodeCandidate(5, "AAA111"), CodeCandidate(9, "AAA111")], brand.pk)

        assert outcome.inserted == [CodeCandidate(5, "AAA111")]
        assert outcome.rejected == [CodeCandidate(9, "AAA111")]
        assert AuthCode.objects.filter(code="AAA111").count() == 1

    def test_other_write_errors_only_fail_their_entry(self, brand, monkeypatch):
        real_insert = ingestion._insert_codes

        def flaky_insert(codes, brand_id, product_id):
            if "BROKEN1" in codes:
                raise IntegrityError("value rejected")
            return real_insert(codes, brand_id, product_id)

        monkeypatch.setattr(ingestion, "_insert_codes", flaky_insert)

        outcome = write_codes(
            [CodeCandidate(1, "AAA111"), CodeCandidate(2, "BROKEN1"), CodeCandidate(3, "CCC333")],
            brand.pk,
        )

        assert [entry.code for entry in outcome.inserted] == ["AAA111", "CCC333"]
        assert [(entry.code, message) for entry, message in outcome.failed] == [("BROKEN1", "value rejected")]
        assert set(AuthCode.objects.values_list("code", flat=True)) == {"AAA111", "CCC333"}


@pytest.mark.django_db
class TestFlushBatch:
    def test_find_existing_codes(self, brand):
        AuthCode.objects.create(code="AAA111", brand=brand)
        assert find_existing_codes(["AAA111", "BBB222", "AAA111"]) == {"AAA111"}

    def test_counts_add_up(self, brand):
        AuthCode.objects.create(code="OLD0001", brand=brand)
        batch = CodeBatch()
        for row in _rows("NEW0001", "OLD0001", "NEW0001", "", "NEW0002"):
            batch.take(row)
        errors = ErrorLog()

        stats = flush_batch(batch, errors, brand.pk)

        assert stats.processed == 5
        assert stats.successful == 2
        assert stats.duplicates == 2
        assert stats.failed == 1
        assert stats.processed == stats.successful + stats.failed + stats.duplicates
        assert [(entry["row"], entry["kind"]) for entry in errors.entries] == [
            (2, "DUPLICATE_CODE"),
            (3, "DUPLICATE_CODE"),
            (4, "EMPTY_OR_MISSING_CODE"),
        ]
        assert errors.entries[0]["message"] == "Duplicate code"


@pytest.mark.django_db
class TestIngestRows:
    def test_flushes_every_batch_and_persists_progress(self, make_job, brand, notifier):
        job = make_job(batch_size=2, status=UploadJob.Status.PROCESSING, total=5)
        errors = ErrorLog(job.max_errors)

        result = ingest_rows(
            job,
            _rows("AAA111", "BBB222", "CCC333", "DDD444", "EEE555"),
            errors=errors,
            notifier=notifier,
            brand_id=brand.pk,
        )

        assert result.processed == 5
        assert result.successful == 5
        assert not result.cancelled
        assert len(notifier.events) == 3
        percentages = [event["payload"]["progress"]["percentage"] for event in notifier.events]
        assert percentages == [40, 80, 100]

        job.refresh_from_db()
        assert job.processed == 5
        assert job.successful == 5
        assert job.percentage == 100

    def test_rejected_rows_fill_batches_too(self, make_job, brand, notifier):
        job = make_job(batch_size=2, status=UploadJob.Status.PROCESSING, total=10, max_errors=3)
        errors = ErrorLog(job.max_errors)

        result = ingest_rows(job, _rows(*["XY"] * 10), errors=errors, notifier=notifier, brand_id=brand.pk)

        assert result.failed == 10
        processed = [event["payload"]["progress"]["processed"] for event in notifier.events]
        assert processed == [2, 4, 6, 8, 10]
        assert len(errors.entries) == 3
        job.refresh_from_db()
        assert job.failed == 10
        assert job.percentage == 100

    def test_rows_are_not_read_past_a_full_batch_before_it_is_written(self, make_job, brand, notifier):
        job = make_job(batch_size=2, status=UploadJob.Status.PROCESSING, total=4)
        stored_when_read = []

        def rows():
            for row in _rows("AAA111", "BBB222", "CCC333", "DDD444"):
                stored_when_read.append(AuthCode.objects.count())
                yield row

        ingest_rows(job, rows(), errors=ErrorLog(), notifier=notifier, brand_id=brand.pk)

        assert stored_when_read == [0, 0, 2, 2]

    def test_stops_before_next_batch_once_cancelled(self, make_job, brand, notifier):
        job = make_job(batch_size=2, status=UploadJob.Status.PROCESSING, total=6)

        def rows():
            for row in _rows("AAA111", "BBB222", "CCC333", "DDD444", "EEE555", "FFF666"):
                if row.row_number == 3:
                    UploadJob.objects.get(pk=job.pk).cancel()
                yield row

        result = ingest_rows(job, rows(), errors=ErrorLog(), notifier=notifier, brand_id=brand.pk)

        assert result.cancelled
        assert result.processed == 2
        job.refresh_from_db()
        assert job.status == UploadJob.Status.CANCELLED
        assert job.processed == 2
        assert AuthCode.objects.count() == 2
