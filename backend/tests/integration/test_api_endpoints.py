"""
Integration tests for the HTTP API.

Runs the FastAPI app in-process against the SQLite test database, with
the recording dispatcher and fake query embedder from conftest.

Covers:
- Media submit / status / delete / search
- Domain errors mapped to HTTP status codes
- Tenant quota
- The recovery admin surface and its authentication
"""

from unittest.mock import AsyncMock, patch

import pytest

from mediaflow.models.media import MediaStatus
from mediaflow.services.pipeline.events import CHUNKS_CREATED, TRANSCRIPTION_COMPLETED, TRANSCRIPTION_REQUESTED

pytestmark = pytest.mark.integration

API = "/api/v1"

TRANSCRIPT = "Welcome to the course. Today we cover async Python."


def upload_payload(tenant_id: str, **source_overrides) -> dict:
    source = {
        "kind": "upload",
        "storage_path": "tenants/acme/lecture-01.mp4",
        "filename": "lecture-01.mp4",
        "file_size_bytes": 2048,
    }
    source.update(source_overrides)
    return {"tenant_id": tenant_id, "title": "Lecture 1", "source": source}


# ========================================
# Health
# ========================================

@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# ========================================
# Media
# ========================================

@pytest.mark.asyncio
class TestSubmitEndpoint:

    async def test_submit_upload(self, client, tenant, dispatcher):
        response = await client.post(f"{API}/media", json=upload_payload(tenant.id))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["next_event"] == TRANSCRIPTION_REQUESTED
        assert data["warnings"] == []
        assert dispatcher.events == [(TRANSCRIPTION_REQUESTED, data["item_id"])]

    async def test_submit_youtube_with_captions(self, client, tenant, dispatcher):
        payload = {
            "tenant_id": tenant.id,
            "source": {
                "kind": "external",
                "video_id": "dQw4w9WgXcQ",
                "captions": {"text": TRANSCRIPT, "language": "en"},
            },
        }

        response = await client.post(f"{API}/media", json=payload)

        assert response.status_code == 201
        assert response.json()["next_event"] == TRANSCRIPTION_COMPLETED

    async def test_unsupported_file_type_is_400(self, client, tenant):
        payload = upload_payload(tenant.id, filename="notes.txt", storage_path="tenants/acme/notes.txt")

        response = await client.post(f"{API}/media", json=payload)

        assert response.status_code == 400
        assert "Unsupported file type" in response.json()["detail"]

    async def test_malformed_descriptor_is_422(self, client, tenant):
        payload = {"tenant_id": tenant.id, "source": {"kind": "external", "video_id": "nope"}}

        response = await client.post(f"{API}/media", json=payload)

        assert response.status_code == 422

    async def test_quota_exceeded_is_403(self, client, tenant):
        payload = upload_payload(tenant.id, file_size_bytes=5 * 1024 ** 3)

        response = await client.post(f"{API}/media", json=payload)

        assert response.status_code == 403
        body = response.json()
        assert body["detail"] == "Quota exceeded"
        assert "Storage limit exceeded" in body["reasons"][0]

    async def test_unknown_tenant_is_404(self, client):
        response = await client.post(f"{API}/media", json=upload_payload("no-such-tenant"))

        assert response.status_code == 404

    async def test_duplicate_is_409(self, client, tenant):
        payload = {"tenant_id": tenant.id, "source": {"kind": "external", "video_id": "dQw4w9WgXcQ"}}

        first = await client.post(f"{API}/media", json=payload)
        second = await client.post(f"{API}/media", json=payload)

        assert second.status_code == 409
        assert second.json()["existing_item_id"] == first.json()["item_id"]


@pytest.mark.asyncio
class TestStatusAndDelete:

    async def test_status_of_new_item(self, client, make_media_item):
        item = await make_media_item()

        response = await client.get(f"{API}/media/{item.id}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pending"
        assert data["progress_percent"] == 0
        assert data["is_terminal"] is False
        assert data["next_steps"] == ["Wait for processing to start"]

    async def test_status_of_failed_item(self, client, make_media_item):
        item = await make_media_item(status=MediaStatus.FAILED, error_message="Captions are disabled")

        data = (await client.get(f"{API}/media/{item.id}/status")).json()

        assert data["error_message"] == "Captions are disabled"
        assert data["next_steps"] == ["Retry processing", "Check error logs", "Contact support"]

    async def test_unknown_item_is_404(self, client):
        response = await client.get(f"{API}/media/missing/status")

        assert response.status_code == 404

    async def test_delete_hides_item(self, client, make_media_item):
        item = await make_media_item()

        response = await client.delete(f"{API}/media/{item.id}")

        assert response.status_code == 200
        assert response.json()["is_deleted"] is True
        assert (await client.get(f"{API}/media/{item.id}/status")).status_code == 404


@pytest.mark.asyncio
class TestSearchEndpoint:

    async def test_search_embeds_query_and_returns_chunks(self, client, tenant, embedding_provider):
        rows = [{
            "chunk_id": 7,
            "media_item_id": "item-1",
            "title": "Lecture 1",
            "chunk_index": 0,
            "text": TRANSCRIPT,
            "start_seconds": 0.0,
            "end_seconds": 7.5,
            "similarity": 0.91,
        }]

        with patch("mediaflow.api.routes.media.search_similar_chunks", new=AsyncMock(return_value=rows)) as search:
            response = await client.post(
                f"{API}/media/search",
                json={"tenant_id": tenant.id, "query": "what is async?", "limit": 3},
            )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["results"][0]["similarity"] == 0.91
        assert embedding_provider.calls == [["what is async?"]]
        assert search.call_args.kwargs["tenant_id"] == tenant.id
        assert search.call_args.kwargs["limit"] == 3

    async def test_search_unknown_tenant(self, client):
        response = await client.post(f"{API}/media/search", json={"tenant_id": "ghost", "query": "x"})

        assert response.status_code == 404


# ========================================
# Tenants
# ========================================

@pytest.mark.asyncio
async def test_tenant_quota(client, tenant):
    response = await client.get(f"{API}/tenants/{tenant.id}/quota")

    assert response.status_code == 200
    data = response.json()
    assert data["tier"] == "basic"
    assert data["allowed"] is True
    assert data["quota"]["health_status"] == "healthy"
    assert data["usage"]["items_count"] == 0


# ========================================
# Admin
# ========================================

@pytest.mark.asyncio
class TestAdminAuth:

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer wrong-key"},
    ])
    async def test_requires_admin_key(self, client, headers):
        response = await client.get(f"{API}/admin/stuck", headers=headers)

        assert response.status_code == 401

    async def test_disabled_without_configured_key(self, client, admin_headers, monkeypatch):
        from mediaflow.core.config import settings
        monkeypatch.setattr(settings, "ADMIN_API_KEY", None)

        response = await client.get(f"{API}/admin/stats", headers=admin_headers)

        assert response.status_code == 503


@pytest.mark.asyncio
class TestAdminEndpoints:

    async def test_list_stuck(self, client, admin_headers, make_media_item):
        stuck = await make_media_item(age_minutes=30, status=MediaStatus.PROCESSING, transcript=TRANSCRIPT)
        await make_media_item(status=MediaStatus.COMPLETED, storage_path="done.mp4")

        response = await client.get(f"{API}/admin/stuck", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["items"][0]["item_id"] == stuck.id
        assert data["items"][0]["proposed_action"] == "retry-embeddings"

    async def test_recover_dry_run(self, client, admin_headers, make_media_item, dispatcher):
        item = await make_media_item(age_minutes=30, status=MediaStatus.PROCESSING, transcript=TRANSCRIPT)

        response = await client.post(f"{API}/admin/recover", json={"dry_run": True}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is True
        assert data["would_recover"] == 1
        assert data["results"][0]["outcome"] == "proposed"
        assert dispatcher.events == []

        status = (await client.get(f"{API}/media/{item.id}/status")).json()
        assert status["recovery_attempts"] == 0

    async def test_recover_explicit_item(self, client, admin_headers, make_media_item, add_chunks, dispatcher):
        item = await make_media_item(age_minutes=30, status=MediaStatus.PROCESSING, transcript=TRANSCRIPT)
        await add_chunks(item.id, 2)

        response = await client.post(
            f"{API}/admin/recover",
            json={"item_ids": [item.id]},
            headers=admin_headers,
        )

        data = response.json()
        assert data["recovered"] == 1
        assert data["results"][0]["action"] == "retry-embedding-generation"
        assert dispatcher.events_for(item.id) == [CHUNKS_CREATED]

    async def test_restart(self, client, admin_headers, make_media_item, add_chunks, dispatcher):
        item = await make_media_item(status=MediaStatus.FAILED, transcript=TRANSCRIPT)
        await add_chunks(item.id, 2)

        response = await client.post(f"{API}/admin/media/{item.id}/restart", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["chunks_deleted"] == 2
        assert dispatcher.events_for(item.id) == [TRANSCRIPTION_COMPLETED]

    async def test_restart_completed_item_is_409(self, client, admin_headers, make_media_item):
        item = await make_media_item(status=MediaStatus.COMPLETED, transcript=TRANSCRIPT)

        response = await client.post(f"{API}/admin/media/{item.id}/restart", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["from_status"] == "completed"

    async def test_diagnostics(self, client, admin_headers, make_media_item):
        item = await make_media_item(age_minutes=30, status=MediaStatus.TRANSCRIBING)

        response = await client.get(f"{API}/admin/media/{item.id}/diagnostics", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["proposed_action"] == "terminate"

    async def test_stats(self, client, admin_headers, make_media_item):
        await make_media_item(status=MediaStatus.EMBEDDING)

        response = await client.get(f"{API}/admin/stats", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["stats"]["embedding"] == 1
        assert response.json()["stats"]["total"] == 1
