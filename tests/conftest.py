from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("INGEST_SERVICE_TOKEN", "test-ingest-token")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("PUBLIC_BASE_URL", "https://alerts.example.test")
os.environ.setdefault("DASHBOARD_ALLOWED_ORIGINS", "http://dashboard.local")

from windwatch.config import get_settings

get_settings.cache_clear()

from windwatch.database import Base, SessionLocal, engine  # noqa: E402
from windwatch.main import app  # noqa: E402
from windwatch.models import Device, NotificationContact, Threshold  # noqa: E402
from windwatch.services.delivery import DeliveryResult  # noqa: E402

@pytest.fixture(autouse=True)
def clean_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db_session():
    with SessionLocal() as session:
        yield session


@pytest.fixture
def make_device(db_session):
    def _make(device_id: str = "HT-ANEM-001", amber: float = 20.0, red: float = 30.0, contacts: int = 1) -> Device:
        device = Device(device_id=device_id, device_name=f"Anemometer {device_id}", location="Harbour Tower")
        device.threshold = Threshold(amber_threshold=amber, red_threshold=red)
        for index in range(contacts):
            device.contacts.append(NotificationContact(email=f"ops{index}@example.test"))
        db_session.add(device)
        db_session.commit()
        return device

    return _make


class RecordingDelivery:
    """Delivery double that remembers every message and can be told to fail."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: str | None = None

    def send(self, recipient: str, template: str, variables: Mapping[str, Any]) -> DeliveryResult:
        if self.fail_with is not None:
            return DeliveryResult(ok=False, error=self.fail_with)
        self.sent.append({"recipient": recipient, "template": template, "variables": dict(variables)})
        return DeliveryResult(ok=True)


@pytest.fixture
def delivery():
    return RecordingDelivery()
