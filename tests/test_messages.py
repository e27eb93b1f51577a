"""
Tests for the GET /messages endpoints.

Tests cover:
- Envelope shape and message fields
- Ordering by timestamp
- Filtering by device and by 'after' (exclusive)
- Bad timestamps rejected with 400
- Store failures reported as 500
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from app.errors import StoreError
from app.main import create_app
from app.models import MessageCandidate


IMEI_A = "350000000000001"
IMEI_B = "350000000000002"

T1 = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(minutes=1)
T3 = T1 + timedelta(minutes=2)


@pytest.fixture
def client(store, source):
    """Test client over a fresh store and an empty modem source."""
    app = create_app(store=store, source=source, poll_interval=3600)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seeded_client(client, store):
    """Client with pre-seeded messages, inserted out of timestamp order."""
    messages = [
        (IMEI_A, "+919876543210", "How are you?", T2),
        (IMEI_A, "+919876543210", "Goodbye", T3),
        (IMEI_A, "+911234567890", "Hello world", T1),
        (IMEI_B, "+919999999999", "Hello there", T2),
    ]
    for device, sender, text, ts in messages:
        store.insert(MessageCandidate(device_identity=device, sender=sender, text=text, timestamp=ts))
    return client


class TestMessagesBasic:
    """Test basic messages retrieval."""

    def test_empty_database(self, client):
        response = client.get(f"/messages/{IMEI_A}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": []}

    def test_device_messages(self, seeded_client):
        response = seeded_client.get(f"/messages/{IMEI_A}")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert "error" not in data
        assert len(data["data"]) == 3

    def test_message_fields(self, seeded_client):
        response = seeded_client.get(f"/messages/{IMEI_B}")

        msg = response.json()["data"][0]
        assert set(msg) == {"id", "sender", "text", "timestamp"}
        assert msg["sender"] == "+919999999999"
        assert msg["text"] == "Hello there"
        assert datetime.fromisoformat(msg["timestamp"].replace("Z", "+00:00")) == T2

    def test_ordering_by_timestamp_asc(self, seeded_client):
        response = seeded_client.get(f"/messages/{IMEI_A}")

        texts = [msg["text"] for msg in response.json()["data"]]
        assert texts == ["Hello world", "How are you?", "Goodbye"]

    def test_unknown_device_is_empty(self, seeded_client):
        response = seeded_client.get("/messages/000000000000000")

        assert response.status_code == 200
        assert response.json()["data"] == []

    def test_all_devices(self, seeded_client):
        response = seeded_client.get("/messages")

        assert response.status_code == 200
        assert len(response.json()["data"]) == 4

    def test_response_includes_request_id_header(self, seeded_client):
        response = seeded_client.get(f"/messages/{IMEI_A}")
        assert "x-request-id" in response.headers


class TestMessagesAfterFilter:
    """Test the 'after' timestamp filter."""

    def test_after_is_exclusive(self, seeded_client):
        response = seeded_client.get(f"/messages/{IMEI_A}", params={"after": "2025-01-15T10:01:00Z"})

        assert response.status_code == 200
        texts = [msg["text"] for msg in response.json()["data"]]
        assert texts == ["Goodbye"]

    def test_after_one_second_earlier_includes_boundary(self, seeded_client):
        response = seeded_client.get(f"/messages/{IMEI_A}", params={"after": "2025-01-15T10:00:59Z"})

        texts = [msg["text"] for msg in response.json()["data"]]
        assert texts == ["How are you?", "Goodbye"]

    def test_after_with_short_offset(self, seeded_client):
        # 11:00:30+01 == 10:00:30Z
        response = seeded_client.get(f"/messages/{IMEI_A}", params={"after": "2025-01-15T11:00:30+01"})

        assert response.status_code == 200
        assert len(response.json()["data"]) == 2

    def test_after_on_all_devices(self, seeded_client):
        response = seeded_client.get("/messages", params={"after": "2025-01-15T10:00:00Z"})

        assert len(response.json()["data"]) == 3

    def test_after_in_future(self, seeded_client):
        response = seeded_client.get(f"/messages/{IMEI_A}", params={"after": "2030-01-01T00:00:00Z"})

        assert response.status_code == 200
        assert response.json()["data"] == []

    @pytest.mark.parametrize("after", ["yesterday", "2025-01-15", "2025-01-15T10:00:00"])
    def test_invalid_after_rejected(self, seeded_client, after):
        response = seeded_client.get(f"/messages/{IMEI_A}", params={"after": after})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert "data" not in data
        assert "RFC3339" in data["error"]


class TestMessagesErrors:
    """Test failure translation."""

    def test_store_error_is_500(self, client, store, monkeypatch):
        def broken_query(device_identity=None, after=None):
            raise StoreError("database is locked")

        monkeypatch.setattr(store, "query", broken_query)

        response = client.get(f"/messages/{IMEI_A}")

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert "database is locked" in data["error"]

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.json()["success"] is False
