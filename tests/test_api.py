"""
Tests for ArcSync Backend API endpoints.

Tests cover:
- Health check and about
- Readiness gate and caller identity
- Pages (upload, list, search, versions, revert)
- Documents (create, update, tags, ordering, stats)
- Jobs (submission, validation, status)
- Error mapping to HTTP status codes
"""

from uuid import uuid4

import pytest

from arcsync_backend.main import app, get_app_status, job_manager
from arcsync_backend.models import JobStatus
from arcsync_backend.status import ApplicationStatus


@pytest.fixture
def user_headers():
    """A fresh caller per test so the shared app database never leaks between tests."""
    return {"X-User-Id": f"user-{uuid4().hex[:8]}"}


@pytest.fixture
def upload_page(client, user_headers, png_bytes):
    def _upload(title="Scan", color="red"):
        response = client.post(
            "/pages",
            data={"title": title},
            files={"file": ("scan.png", png_bytes(color=color), "image/png")},
            headers=user_headers,
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _upload


@pytest.fixture
def create_document(client, user_headers):
    def _create(title="Ledger", tags=None):
        response = client.post("/documents", json={"title": title, "tags": tags}, headers=user_headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _create


class TestHealthCheck:
    """Tests for the /healthz and /about endpoints."""

    def test_health_check_returns_ok(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_about_reports_state(self, client):
        response = client.get("/about")
        assert response.status_code == 200

        data = response.json()
        assert data["server_name"] == "ArcSync"
        assert data["state"] == "ready"


class TestReadinessGate:
    """Requests are refused while the application is initializing."""

    def test_initializing_app_returns_503(self, client, user_headers):
        app.dependency_overrides[get_app_status] = ApplicationStatus
        try:
            response = client.get("/pages", headers=user_headers)
            health = client.get("/healthz")
        finally:
            app.dependency_overrides.pop(get_app_status, None)

        assert response.status_code == 503
        assert response.json()["detail"] == "Application is starting up"
        assert health.status_code == 200

    def test_degraded_app_still_serves(self, client, user_headers):
        degraded = ApplicationStatus()
        degraded.mark_degraded("cache unavailable")
        app.dependency_overrides[get_app_status] = lambda: degraded
        try:
            response = client.get("/pages", headers=user_headers)
            about = client.get("/about")
        finally:
            app.dependency_overrides.pop(get_app_status, None)

        assert response.status_code == 200
        assert about.json()["state"] == "degraded"
        assert about.json()["reason"] == "cache unavailable"


class TestIdentity:
    def test_missing_user_header_is_unauthorized(self, client):
        response = client.get("/pages")
        assert response.status_code == 401


class TestPages:
    """Tests for the /pages endpoints."""

    def test_upload_page(self, upload_page):
        page = upload_page("Receipt")

        assert page["title"] == "Receipt"
        assert page["total_versions"] == 1
        assert page["current_version"]["version_number"] == 1
        assert page["current_version"]["is_current"] is True

    def test_upload_rejects_non_images(self, client, user_headers):
        response = client.post(
            "/pages",
            data={"title": "Notes"},
            files={"file": ("notes.txt", b"hello", "text/plain")},
            headers=user_headers,
        )
        assert response.status_code == 400

    def test_list_and_unassigned(self, client, user_headers, upload_page):
        first = upload_page("One")
        second = upload_page("Two")

        listing = client.get("/pages", params={"page_size": 1}, headers=user_headers).json()
        assert listing["total_count"] == 2
        assert listing["total_pages"] == 2
        assert listing["items"][0]["id"] == second["id"]

        unassigned = client.get("/pages/unassigned", headers=user_headers).json()
        assert {item["id"] for item in unassigned} == {first["id"], second["id"]}

    def test_get_unknown_page_is_404(self, client, user_headers):
        response = client.get("/pages/does-not-exist", headers=user_headers)
        assert response.status_code == 404

    def test_other_users_cannot_see_page(self, client, upload_page):
        page = upload_page()
        response = client.get(f"/pages/{page['id']}", headers={"X-User-Id": "intruder"})
        assert response.status_code == 404

    def test_rename_and_delete(self, client, user_headers, upload_page):
        page = upload_page("Old")

        renamed = client.put(f"/pages/{page['id']}", json={"title": "New"}, headers=user_headers)
        assert renamed.status_code == 200
        assert renamed.json()["title"] == "New"

        deleted = client.delete(f"/pages/{page['id']}", headers=user_headers)
        assert deleted.status_code == 204
        assert client.get(f"/pages/{page['id']}", headers=user_headers).status_code == 404

    def test_versions_and_revert(self, client, user_headers, upload_page, png_bytes):
        page = upload_page()
        original_id = page["current_version"]["id"]

        added = client.post(
            f"/pages/{page['id']}/versions",
            data={"message": "retake"},
            files={"file": ("retake.png", png_bytes(color="blue"), "image/png")},
            headers=user_headers,
        )
        assert added.status_code == 201
        assert added.json()["version_number"] == 2
        assert added.json()["message"] == "retake"

        reverted = client.post(
            f"/pages/{page['id']}/revert", json={"target_version_id": original_id}, headers=user_headers
        )
        assert reverted.status_code == 204

        versions = client.get(f"/pages/{page['id']}/versions", headers=user_headers).json()
        assert [(v["version_number"], v["is_current"]) for v in versions] == [(2, False), (1, True)]

    def test_revert_to_unknown_version_is_404(self, client, user_headers, upload_page):
        page = upload_page()
        response = client.post(
            f"/pages/{page['id']}/revert", json={"target_version_id": "missing"}, headers=user_headers
        )
        assert response.status_code == 404

    def test_blank_search_is_400(self, client, user_headers):
        response = client.get("/pages/search", params={"q": "  "}, headers=user_headers)
        assert response.status_code == 400

    def test_search_without_ocr_returns_nothing(self, client, user_headers, upload_page):
        upload_page()
        response = client.get("/pages/search", params={"q": "anything"}, headers=user_headers)
        assert response.status_code == 200
        assert response.json()["items"] == []

    def test_download_version_content(self, client, user_headers, upload_page):
        page = upload_page()
        response = client.get(f"/versions/{page['current_version']['id']}/content", headers=user_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content.startswith(b"\x89PNG")


class TestDocuments:
    """Tests for the /documents endpoints."""

    def test_create_and_get(self, client, user_headers, create_document):
        document = create_document("Taxes", tags=["2024", "tax"])

        fetched = client.get(f"/documents/{document['id']}", headers=user_headers).json()
        assert fetched["title"] == "Taxes"
        assert fetched["tags"] == ["2024", "tax"]
        assert fetched["pages"] == []
        assert fetched["current_version_id"] is None

    def test_title_is_validated(self, client, user_headers):
        response = client.post("/documents", json={"title": ""}, headers=user_headers)
        assert response.status_code == 422

    def test_partial_update(self, client, user_headers, create_document):
        document = create_document("Taxes", tags=["tax"])

        updated = client.put(f"/documents/{document['id']}", json={"tags": []}, headers=user_headers).json()

        assert updated["title"] == "Taxes"
        assert updated["tags"] == []

    def test_tags_endpoint_lists_known_tags(self, client, user_headers, create_document):
        create_document(tags=["zz-api-tag"])
        tags = client.get("/documents/tags", headers=user_headers).json()
        assert "zz-api-tag" in tags

    def test_list_filters_by_tags(self, client, user_headers, create_document):
        tagged = create_document("Tagged", tags=["x", "y"])
        create_document("Plain")

        listing = client.get("/documents", params={"tags": "x,y"}, headers=user_headers).json()
        assert [item["id"] for item in listing["items"]] == [tagged["id"]]

    def test_unknown_sort_is_400(self, client, user_headers):
        response = client.get("/documents", params={"sort_by": "sideways"}, headers=user_headers)
        assert response.status_code == 400

    def test_page_membership_and_ordering(self, client, user_headers, create_document, upload_page):
        document = create_document()
        pages = [upload_page(f"P{i}") for i in range(3)]
        for page in pages:
            response = client.post(
                f"/documents/{document['id']}/pages", json={"page_id": page["id"]}, headers=user_headers
            )
            assert response.status_code == 200

        inserted = client.post(
            f"/documents/{document['id']}/pages/insert",
            json={"page_id": pages[2]["id"], "new_order": 1},
            headers=user_headers,
        ).json()
        assert [page["id"] for page in inserted["pages"]] == [pages[2]["id"], pages[0]["id"], pages[1]["id"]]

        reordered = client.put(
            f"/documents/{document['id']}/pages/order",
            json={
                "page_orders": [
                    {"page_id": pages[0]["id"], "order": 1},
                    {"page_id": pages[1]["id"], "order": 2},
                    {"page_id": pages[2]["id"], "order": 3},
                ]
            },
            headers=user_headers,
        ).json()
        assert [(page["id"], page["order"]) for page in reordered["pages"]] == [
            (pages[0]["id"], 1),
            (pages[1]["id"], 2),
            (pages[2]["id"], 3),
        ]

        removed = client.delete(f"/documents/{document['id']}/pages/{pages[0]['id']}", headers=user_headers).json()
        assert [(page["id"], page["order"]) for page in removed["pages"]] == [
            (pages[1]["id"], 1),
            (pages[2]["id"], 2),
        ]

    def test_conflicting_orders_are_400(self, client, user_headers, create_document, upload_page):
        document = create_document()
        pages = [upload_page(f"P{i}") for i in range(2)]
        for page in pages:
            client.post(f"/documents/{document['id']}/pages", json={"page_id": page["id"]}, headers=user_headers)

        response = client.put(
            f"/documents/{document['id']}/pages/order",
            json={"page_orders": [{"page_id": p["id"], "order": 1} for p in pages]},
            headers=user_headers,
        )
        assert response.status_code == 400

    def test_stats(self, client, user_headers, create_document, upload_page):
        create_document()
        upload_page()
        upload_page()

        stats = client.get("/documents/stats", headers=user_headers).json()
        assert stats == {"total_documents": 1, "total_pages": 2}

    def test_delete_document(self, client, user_headers, create_document):
        document = create_document()
        assert client.delete(f"/documents/{document['id']}", headers=user_headers).status_code == 204
        assert client.get(f"/documents/{document['id']}", headers=user_headers).status_code == 404


class TestJobs:
    """Tests for the /jobs endpoints."""

    def test_ocr_job_is_accepted_and_tracked(self, client, user_headers, upload_page, job_waiter):
        page = upload_page()

        response = client.post(f"/jobs/ocr/{page['current_version']['id']}", headers=user_headers)
        assert response.status_code == 202
        job_id = response.json()["job_id"]

        # The test environment points OCR at a command that does not exist.
        done = job_waiter(job_manager.get_job, job_id)
        assert done.status == JobStatus.FAILED
        assert "not found" in done.error_message

        detail = client.get(f"/jobs/{job_id}", headers=user_headers).json()
        assert detail["status"] == "failed"
        assert detail["type"] == "ocr"

        listing = client.get("/jobs", headers=user_headers).json()
        assert [job["id"] for job in listing] == [job_id]

    def test_ocr_for_unknown_version_is_404(self, client, user_headers):
        response = client.post("/jobs/ocr/missing", headers=user_headers)
        assert response.status_code == 404

    def test_stitch_needs_two_sources(self, client, user_headers, upload_page):
        page = upload_page()
        response = client.post(
            f"/jobs/stitch/page/{page['id']}",
            json={"source_version_ids": [page["current_version"]["id"]]},
            headers=user_headers,
        )
        assert response.status_code == 400
        assert client.get("/jobs", headers=user_headers).json() == []

    def test_stitch_job_creates_new_version(self, client, user_headers, upload_page, job_waiter):
        first = upload_page(color="red")
        second = upload_page(color="blue")
        sources = [first["current_version"]["id"], second["current_version"]["id"]]

        response = client.post(
            f"/jobs/stitch/page/{first['id']}", json={"source_version_ids": sources}, headers=user_headers
        )
        assert response.status_code == 202

        done = job_waiter(job_manager.get_job, response.json()["job_id"])
        assert done.status == JobStatus.COMPLETED

        page = client.get(f"/pages/{first['id']}", headers=user_headers).json()
        assert page["total_versions"] == 2
        assert page["current_version"]["version_number"] == 2
        assert page["current_version"]["message"] == "Stitched from 2 versions"

    def test_stitch_with_unknown_owner_kind_is_422(self, client, user_headers):
        response = client.post(
            "/jobs/stitch/folder/abc", json={"source_version_ids": ["a", "b"]}, headers=user_headers
        )
        assert response.status_code == 422

    def test_unknown_job_is_404(self, client, user_headers):
        assert client.get("/jobs/missing", headers=user_headers).status_code == 404
