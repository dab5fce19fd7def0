"""Tests for the HTTP API using FastAPI's TestClient."""

import time
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient

from docingest.api import app, create_app
from docingest.api.controller.attachment_controller import _content_disposition
from docingest.ingestion import IngestionCoordinator
from docingest.services import AttachmentService, ParseOrchestrator


@pytest.fixture
def client(metadata_store, blob_store, content_store, parser_settings):
    """API client over a coordinator with parsing disabled."""
    coordinator = IngestionCoordinator(
        blob_store=blob_store,
        content_store=content_store,
        attachment_service=AttachmentService(metadata_store),
        orchestrator=ParseOrchestrator(content_store, blob_store, None, parser_settings),
    )
    with TestClient(create_app(coordinator)) as test_client:
        yield test_client
        test_client.portal.call(coordinator.orchestrator.drain)


def _upload(client, container_id="r1", filename="hello.txt", data=b"hello", **form):
    return client.post(
        f"/containers/{container_id}/attachments",
        files={"file": (filename, data, "text/plain")},
        data=form,
    )


def _wait_for_status(client, attachment_id, expected, timeout=2.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/attachments/{attachment_id}/status").json()
        if body["parse_status"] == expected or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_module_app_is_entry_point(self):
        """Test that the uvicorn target serves health and builds its coordinator only at startup."""
        assert "/health" in {route.path for route in app.routes}
        assert not hasattr(app.state, "coordinator")


class TestUpload:
    """Test the upload endpoint."""

    def test_upload_creates_attachment(self, client):
        response = _upload(client)

        assert response.status_code == 201
        body = response.json()
        assert body["attachment"]["container_id"] == "r1"
        assert body["attachment"]["display_name"] == "hello.txt"
        assert body["attachment"]["digest"] == "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
        assert body["parse_status"] == "pending"
        assert body["is_new_content"] is True

    def test_status_settles_to_skipped_without_parser(self, client):
        attachment_id = _upload(client).json()["attachment"]["id"]

        body = _wait_for_status(client, attachment_id, "skipped")

        assert body["parse_status"] == "skipped"
        assert body["parsed_text"] is None

    def test_duplicate_returns_conflict(self, client):
        first = _upload(client).json()

        response = _upload(client, filename="again.txt")

        assert response.status_code == 409
        assert response.json()["existing_attachment_id"] == first["attachment"]["id"]

    def test_force_on_duplicate(self, client):
        _upload(client)

        response = _upload(client, force_on_duplicate="true")

        assert response.status_code == 201
        assert response.json()["is_new_content"] is False

    def test_storage_failure_returns_503(self, client, blob_store):
        blob_store.fail_puts = True

        response = _upload(client)

        assert response.status_code == 503


class TestAttachmentEndpoints:
    """Test listing, editing, removal and download."""

    def test_list_and_remove(self, client):
        attachment_id = _upload(client).json()["attachment"]["id"]

        assert [a["id"] for a in client.get("/containers/r1/attachments").json()] == [attachment_id]

        removed = client.delete(f"/attachments/{attachment_id}")

        assert removed.status_code == 200
        assert removed.json()["removed_at"] is not None
        assert client.get("/containers/r1/attachments").json() == []
        assert len(client.get("/containers/r1/attachments", params={"include_removed": True}).json()) == 1

    def test_restore(self, client):
        attachment_id = _upload(client).json()["attachment"]["id"]
        client.delete(f"/attachments/{attachment_id}")

        response = client.post(f"/attachments/{attachment_id}/restore")

        assert response.status_code == 200
        assert response.json()["removed_at"] is None

    def test_restore_conflict(self, client):
        first_id = _upload(client).json()["attachment"]["id"]
        client.delete(f"/attachments/{first_id}")
        second_id = _upload(client).json()["attachment"]["id"]

        response = client.post(f"/attachments/{first_id}/restore")

        assert response.status_code == 409
        assert response.json()["existing_attachment_id"] == second_id

    def test_update_metadata(self, client):
        attachment_id = _upload(client).json()["attachment"]["id"]

        response = client.patch(
            f"/attachments/{attachment_id}",
            json={"notes": "Q4 numbers", "tags": ["finance", "finance"]},
        )

        assert response.status_code == 200
        assert response.json()["notes"] == "Q4 numbers"
        assert response.json()["tags"] == ["finance"]
        assert response.json()["display_name"] == "hello.txt"

    @pytest.mark.parametrize("display_name", ["", "   "])
    def test_blank_display_name_rejected(self, client, display_name):
        attachment_id = _upload(client).json()["attachment"]["id"]

        response = client.patch(f"/attachments/{attachment_id}", json={"display_name": display_name})

        assert response.status_code == 422

    def test_download(self, client):
        attachment_id = _upload(client, data=b"raw bytes").json()["attachment"]["id"]

        response = client.get(f"/attachments/{attachment_id}/content")

        assert response.status_code == 200
        assert response.content == b"raw bytes"
        assert "hello.txt" in response.headers["content-disposition"]

    def test_download_non_ascii_filename(self, client):
        body = _upload(client, filename="报告.pdf", data=b"x").json()
        assert body["attachment"]["display_name"] == "报告.pdf"

        response = client.get(f"/attachments/{body['attachment']['id']}/content")

        assert response.status_code == 200
        assert response.content == b"x"
        disposition = response.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="')
        assert f"filename*=UTF-8''{quote('报告.pdf', safe='')}" in disposition

    def test_download_filename_cannot_inject_headers(self, client):
        attachment_id = _upload(client).json()["attachment"]["id"]
        client.patch(f"/attachments/{attachment_id}", json={"display_name": 'evil"\r\nSet-Cookie: x=1.txt'})

        response = client.get(f"/attachments/{attachment_id}/content")

        assert response.status_code == 200
        assert "set-cookie" not in response.headers
        assert response.headers["content-disposition"] == (
            "attachment; filename=\"evil___Set-Cookie: x=1.txt\"; "
            "filename*=UTF-8''evil%22%0D%0ASet-Cookie%3A%20x%3D1.txt"
        )

    def test_search(self, client):
        _upload(client, filename="earnings.txt", data=b"earnings")
        _upload(client, filename="memo.txt", data=b"memo")

        response = client.get("/containers/r1/attachments/search", params={"q": "EARN"})

        assert [a["display_name"] for a in response.json()] == ["earnings.txt"]

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/attachments/missing/status"),
            ("get", "/attachments/missing/content"),
            ("delete", "/attachments/missing"),
            ("post", "/attachments/missing/restore"),
        ],
    )
    def test_unknown_attachment_returns_404(self, client, method, path):
        response = getattr(client, method)(path)

        assert response.status_code == 404


class TestContentDisposition:
    """Test Content-Disposition header values for download names."""

    @pytest.mark.parametrize(
        "display_name, fallback",
        [
            ("hello.txt", "hello.txt"),
            ("résumé.pdf", "r?sum?.pdf"),
            ('quote".txt', "quote_.txt"),
            ("报告.pdf", "??.pdf"),
            ("", "download"),
        ],
    )
    def test_ascii_fallback(self, display_name, fallback):
        value = _content_disposition(display_name)

        assert value.startswith(f'attachment; filename="{fallback}"; ')
        value.encode("latin-1")
