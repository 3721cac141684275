from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from photoflow.models import PhotoStatus


def _storage_error():
    return ClientError(
        {"Error": {"Code": "ServiceUnavailable", "Message": "Slow down"}},
        "PutObject",
    )


@pytest.mark.asyncio
async def test_health_check(client, mocker, test_engine):
    """Test the deep health check endpoint."""
    mocker.patch("photoflow.routers.health.engine", test_engine)

    # Mock Redis PING
    mock_redis = mocker.patch("photoflow.routers.health.Redis.from_url")
    mock_redis.return_value.ping = AsyncMock(return_value=True)
    mock_redis.return_value.aclose = AsyncMock()

    mock_conn = mocker.patch("photoflow.routers.health.Connection")
    mock_conn.return_value.__enter__.return_value.connect = MagicMock(return_value=None)

    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["dependencies"] == {
        "database": "ok",
        "redis": "ok",
        "rabbitmq": "ok",
        "s3": "ok",
    }


@pytest.mark.asyncio
async def test_readyz_reports_unreachable_redis(client, mocker, test_engine):
    mocker.patch("photoflow.routers.health.engine", test_engine)
    mock_redis = mocker.patch("photoflow.routers.health.Redis.from_url")
    mock_redis.return_value.ping = AsyncMock(side_effect=ConnectionError("refused"))
    mocker.patch("photoflow.routers.health.Connection")

    response = await client.get("/api/readyz")
    assert response.status_code == 503
    assert response.json()["detail"]["dependencies"]["redis"] == "unreachable"


@pytest.mark.asyncio
async def test_livez(client):
    response = await client.get("/api/livez")
    assert response.status_code == 200
    assert response.json() == {"status": "alive"}


@pytest.mark.asyncio
async def test_upload_success(client, app, repository, s3_mock, png_bytes):
    """Upload stores the blob, creates the record and starts processing."""
    files = {"file": ("test.png", png_bytes, "image/png")}

    response = await client.post("/api/upload", files=files)

    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "test.png"
    assert data["url"].endswith(f"{data['id']}-test.png")

    stored = s3_mock.get_object(Bucket="test-bucket", Key=f"{data['id']}-test.png")
    assert stored["Body"].read() == png_bytes
    assert stored["ContentType"] == "image/png"

    photo = await repository.get_photo(data["id"])
    assert photo.status == PhotoStatus.PROCESSING
    assert photo.retry_count == 0
    assert app.state.simulator.has_job(data["id"])


@pytest.mark.asyncio
async def test_upload_without_file(client):
    response = await client.post("/api/upload", data={"note": "nothing attached"})
    assert response.status_code == 400
    assert response.json()["detail"] == "No file provided"


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_type(client):
    files = {"file": ("notes.txt", b"hello", "text/plain")}
    response = await client.post("/api/upload", files=files)
    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["detail"]


@pytest.mark.asyncio
async def test_upload_rejects_undecodable_image(client):
    files = {"file": ("broken.png", b"definitely not a png", "image/png")}
    response = await client.post("/api/upload", files=files)
    assert response.status_code == 400
    assert "not a readable image" in response.json()["detail"]


@pytest.mark.asyncio
async def test_upload_rejects_oversized_file(client, mock_settings, monkeypatch, png_bytes):
    monkeypatch.setattr(mock_settings, "max_upload_bytes", 16)
    files = {"file": ("test.png", png_bytes, "image/png")}
    response = await client.post("/api/upload", files=files)
    assert response.status_code == 413


@pytest.mark.asyncio
async def test_upload_storage_failure_is_retryable(client, repository, mocker, png_bytes):
    mocker.patch("photoflow.routers.upload.storage.store", side_effect=_storage_error())
    files = {"file": ("test.png", png_bytes, "image/png")}

    response = await client.post("/api/upload", files=files)

    assert response.status_code == 503
    data = response.json()
    assert data["error"] == "Failed to upload file"
    assert data["retryCount"] == 1
    assert data["canRetry"] is True

    photo = await repository.get_photo(data["id"])
    assert photo.status == PhotoStatus.FAILED
    assert photo.retry_count == 1
    assert photo.error.startswith("Upload failed")


@pytest.mark.asyncio
async def test_upload_retry_requeues_failed_photo(client, repository, png_bytes):
    await repository.create_photo("photo-a", "test.png", "")
    await repository.update_photo(
        "photo-a", status=PhotoStatus.FAILED, error="Upload failed", retry_count=1
    )
    files = {"file": ("test.png", png_bytes, "image/png")}

    response = await client.post("/api/upload", files=files, data={"photo_id": "photo-a"})

    assert response.status_code == 200
    assert response.json()["id"] == "photo-a"
    photo = await repository.get_photo("photo-a")
    assert photo.status == PhotoStatus.PROCESSING
    assert photo.error is None
    assert photo.retry_count == 1
    assert photo.url.endswith("photo-a-test.png")


@pytest.mark.asyncio
async def test_upload_last_retry_failure_cannot_retry(client, repository, mocker, png_bytes):
    await repository.create_photo("photo-a", "test.png", "")
    await repository.update_photo(
        "photo-a", status=PhotoStatus.FAILED, error="Upload failed", retry_count=2
    )
    mocker.patch("photoflow.routers.upload.storage.store", side_effect=_storage_error())
    files = {"file": ("test.png", png_bytes, "image/png")}

    response = await client.post("/api/upload", files=files, data={"photo_id": "photo-a"})

    assert response.status_code == 503
    data = response.json()
    assert data["retryCount"] == 3
    assert data["canRetry"] is False
    assert (await repository.get_photo("photo-a")).retry_count == 3


@pytest.mark.asyncio
async def test_upload_retry_budget_exhausted(client, repository, mocker, png_bytes):
    await repository.create_photo("photo-a", "test.png", "")
    await repository.update_photo(
        "photo-a", status=PhotoStatus.FAILED, error="Upload failed", retry_count=3
    )
    mock_store = mocker.patch("photoflow.routers.upload.storage.store")
    files = {"file": ("test.png", png_bytes, "image/png")}

    response = await client.post("/api/upload", files=files, data={"photo_id": "photo-a"})

    assert response.status_code == 409
    assert response.json()["canRetry"] is False
    mock_store.assert_not_called()


@pytest.mark.asyncio
async def test_upload_retry_unknown_photo(client, png_bytes):
    files = {"file": ("test.png", png_bytes, "image/png")}
    response = await client.post("/api/upload", files=files, data={"photo_id": "ghost"})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_upload_retry_rejected_while_processing(client, app, repository, mocker, png_bytes):
    files = {"file": ("test.png", png_bytes, "image/png")}
    photo_id = (await client.post("/api/upload", files=files)).json()["id"]
    job = app.state.simulator.get_job(photo_id)
    mock_store = mocker.patch("photoflow.routers.upload.storage.store")

    response = await client.post("/api/upload", files=files, data={"photo_id": photo_id})

    assert response.status_code == 409
    data = response.json()
    assert data["id"] == photo_id
    assert data["canRetry"] is False
    mock_store.assert_not_called()
    assert app.state.simulator.get_job(photo_id) is job
    assert (await repository.get_photo(photo_id)).status == PhotoStatus.PROCESSING


@pytest.mark.asyncio
async def test_upload_retry_rejected_for_done_photo(client, app, repository, png_bytes):
    await repository.create_photo("photo-a", "test.png", "http://blob/photo-a-test.png")
    await repository.update_photo(
        "photo-a",
        status=PhotoStatus.DONE,
        progress=100,
        processed_at=datetime(2026, 1, 1, tzinfo=UTC),
    )
    before = (await repository.get_photo("photo-a")).processed_at
    files = {"file": ("test.png", png_bytes, "image/png")}

    response = await client.post("/api/upload", files=files, data={"photo_id": "photo-a"})

    assert response.status_code == 409
    assert response.json()["canRetry"] is False
    assert not app.state.simulator.has_job("photo-a")
    photo = await repository.get_photo("photo-a")
    assert photo.status == PhotoStatus.DONE
    assert photo.processed_at == before


@pytest.mark.asyncio
async def test_upload_idempotency_header_hit(client, repository, mocker, png_bytes):
    """Header-based idempotency should short-circuit to the existing photo."""
    await repository.create_photo("photo-a", "test.png", "http://blob/photo-a-test.png")
    mocker.patch("photoflow.routers.upload.idempotency.find_uploaded_photo", return_value="photo-a")
    mock_set = mocker.patch("photoflow.routers.upload.idempotency.remember_upload")
    mock_store = mocker.patch("photoflow.routers.upload.storage.store")

    files = {"file": ("test.png", png_bytes, "image/png")}
    headers = {"Idempotency-Key": "demo-idempotency-key"}
    response = await client.post("/api/upload", files=files, headers=headers)

    assert response.status_code == 200
    assert response.json() == {
        "id": "photo-a",
        "url": "http://blob/photo-a-test.png",
        "name": "test.png",
    }
    mock_set.assert_not_called()
    mock_store.assert_not_called()


@pytest.mark.asyncio
async def test_upload_idempotency_key_recorded(client, mocker, png_bytes):
    mocker.patch("photoflow.routers.upload.idempotency.find_uploaded_photo", return_value=None)
    mock_set = mocker.patch("photoflow.routers.upload.idempotency.remember_upload")

    files = {"file": ("test.png", png_bytes, "image/png")}
    headers = {"Idempotency-Key": "demo-idempotency-key"}
    response = await client.post("/api/upload", files=files, headers=headers)

    assert response.status_code == 200
    mock_set.assert_called_once_with("demo-idempotency-key", response.json()["id"])


@pytest.mark.asyncio
async def test_get_photo_not_found(client):
    response = await client.get("/api/photos/ghost")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_get_photo(client, repository):
    await repository.create_photo("photo-a", "a.png", "http://blob/a.png")

    response = await client.get("/api/photos/photo-a")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "queued"
    assert data["progress"] == 0
    assert data["logs"] == []
    assert data["processed_at"] is None


@pytest.mark.asyncio
async def test_list_photos_newest_first(client, repository):
    await repository.create_photo("photo-a", "a.png", "http://blob/a.png")
    await repository.create_photo("photo-b", "b.png", "http://blob/b.png")

    response = await client.get("/api/photos")

    assert [p["id"] for p in response.json()] == ["photo-b", "photo-a"]


@pytest.mark.asyncio
async def test_list_failed_photos_with_budget(client, repository):
    await repository.create_photo("photo-a", "a.png", "")
    await repository.create_photo("photo-b", "b.png", "")
    await repository.update_photo("photo-a", status=PhotoStatus.FAILED, error="x", retry_count=1)
    await repository.update_photo("photo-b", status=PhotoStatus.FAILED, error="x", retry_count=3)

    response = await client.get("/api/photos/failed")

    assert [p["id"] for p in response.json()] == ["photo-a"]


@pytest.mark.asyncio
async def test_delete_photo_drops_live_job(client, app, repository):
    await repository.create_photo("photo-a", "a.png", "http://blob/a.png")
    await app.state.simulator.start("photo-a")

    response = await client.delete("/api/photos/photo-a")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert await repository.get_photo("photo-a") is None
    assert not app.state.simulator.has_job("photo-a")


@pytest.mark.asyncio
async def test_gallery_lists_done_photos(client, repository):
    await repository.create_photo("photo-a", "a.png", "http://blob/a.png")
    await repository.create_photo("photo-b", "b.png", "http://blob/b.png")
    await repository.update_photo("photo-b", status=PhotoStatus.DONE, progress=100)

    response = await client.get("/api/gallery")

    assert response.status_code == 200
    assert [p["id"] for p in response.json()] == ["photo-b"]


@pytest.mark.asyncio
async def test_gallery_bulk_delete(client, repository):
    await repository.create_photo("photo-a", "a.png", "http://blob/a.png")
    await repository.create_photo("photo-b", "b.png", "http://blob/b.png")

    response = await client.request("DELETE", "/api/gallery", json={"ids": ["photo-a", "photo-b"]})

    assert response.status_code == 200
    assert await repository.get_all_photos() == []


@pytest.mark.asyncio
async def test_gallery_bulk_delete_rejects_non_list(client):
    response = await client.request("DELETE", "/api/gallery", json={"ids": "photo-a"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_process_runs_one_tick(client, repository):
    await repository.create_photo("photo-a", "a.png", "http://blob/a.png")

    response = await client.post("/api/process")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert (await repository.get_photo("photo-a")).status == PhotoStatus.PROCESSING


@pytest.mark.asyncio
async def test_process_reports_failure(client, mocker):
    mocker.patch("photoflow.routers.processing.run_tick", side_effect=RuntimeError("db down"))

    response = await client.post("/api/process")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to process photos"}


@pytest.mark.asyncio
async def test_events_streams_server_sent_events(client, mocker):
    class FiniteStream:
        def __init__(self, *args, **kwargs):
            pass

        async def events(self):
            yield 'data: {"type": "update", "photos": []}\n\n'

    mocker.patch("photoflow.routers.processing.UpdateStream", FiniteStream)

    response = await client.get("/api/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.text == 'data: {"type": "update", "photos": []}\n\n'


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    response = await client.get("/api/livez", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"


@pytest.mark.asyncio
async def test_oversized_request_id_is_replaced(client):
    response = await client.get("/api/livez", headers={"X-Request-ID": "x" * 500})
    rid = response.headers["X-Request-ID"]
    assert rid != "x" * 500
    assert len(rid) == 32
