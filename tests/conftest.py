import csv
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest
from openpyxl import Workbook

from codes.models import Brand, Product, UploadJob


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Dict[str, object]] = []

    def publish(self, user_id, payload):
        self.events.append({"user_id": user_id, "payload": payload})
        return payload

    @property
    def statuses(self) -> List[str]:
        return [event["payload"]["status"] for event in self.events]


@pytest.fixture(autouse=True)
def in_memory_channels(settings, tmp_path):
    settings.CHANNEL_LAYERS = {"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}}
    settings.MEDIA_ROOT = tmp_path / "media"


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def brand(db) -> Brand:
    return Brand.objects.create(name="Acme")


@pytest.fixture
def product(brand) -> Product:
    return Product.objects.create(brand=brand, name="Widget")


@pytest.fixture
def make_job(brand):
    def _make_job(file_kind: str = UploadJob.FileKind.CSV, **overrides) -> UploadJob:
        values = {
            "job_id": UploadJob.generate_job_id(),
            "brand": brand,
            "filename": f"codes.{file_kind}",
            "file_kind": file_kind,
        }
        values.update(overrides)
        return UploadJob.objects.create(**values)

    return _make_job


@pytest.fixture
def write_csv(tmp_path):
    def _write_csv(rows: Sequence[Sequence[str]], name: str = "codes.csv") -> Path:
        path = tmp_path / name
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            writer.writerows(rows)
        return path

    return _write_csv


@pytest.fixture
def write_xlsx(tmp_path):
    def _write_xlsx(rows: Sequence[Sequence[Optional[object]]], name: str = "codes.xlsx") -> Path:
        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = "Codes"
        for row in rows:
            worksheet.append(list(row))
        path = tmp_path / name
        workbook.save(path)
        return path

    return _write_xlsx
