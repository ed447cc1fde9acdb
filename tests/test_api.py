"""
Tests for the import API endpoints.
"""
from app.models.deck_models import Deck

from tests.conftest import TEST_USER

HEADERS = {"X-User-Id": TEST_USER}


def create(client, raw_data="1 Sol Ring\n1 Command Tower", **extra):
    response = client.post("/imports", json={"source": "text", "raw_data": raw_data, **extra}, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()["job"]


class TestCreateEndpoints:
    """Job creation and validation."""

    def test_create_job(self, client, dispatcher):
        job = create(client)

        assert job["status"] == "pending"
        assert job["current_step"] == "queued"
        assert job["user_id"] == TEST_USER
        assert job["options"]["continue_on_error"] is False
        assert dispatcher.jobs == [job["id"]]

    def test_user_header_is_required(self, client):
        response = client.post("/imports", json={"source": "text", "raw_data": "1 Sol Ring"})
        assert response.status_code == 422

    def test_missing_input_is_rejected(self, client):
        response = client.post("/imports", json={"source": "text"}, headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["detail"]["type"] == "validation_error"

    def test_unknown_option_value_is_rejected(self, client):
        response = client.post("/imports", json={"source": "text", "raw_data": "1 Sol Ring",
                                                 "options": {"concurrency": 0}}, headers=HEADERS)
        assert response.status_code == 400

    def test_validate(self, client):
        response = client.post("/imports/validate", json={
            "source": "custom", "raw_data": "Sol Ring,1", "source_url": "ftp://example.com/deck.txt",
        })

        data = response.json()
        assert response.status_code == 200
        assert data["is_valid"] is False
        codes = {issue["code"] for issue in data["errors"]}
        assert codes == {"multiple_inputs", "invalid_url", "custom_fields_required"}

    def test_validate_estimates_time(self, client):
        data = client.post("/imports/validate", json={"source": "text", "raw_data": "1 Sol Ring\n1 Counterspell"}).json()

        assert data["is_valid"] is True
        assert data["estimated_processing_time"] == 50

    def test_batch(self, client):
        response = client.post("/imports/batch", json={"items": [
            {"source": "text", "raw_data": "1 Sol Ring"},
            {"source": "csv", "raw_data": "name,quantity\nCounterspell,1\n"},
        ]}, headers=HEADERS)

        assert response.status_code == 201
        assert response.json()["job"]["type"] == "batch"

    def test_empty_batch_is_rejected(self, client):
        response = client.post("/imports/batch", json={"items": []}, headers=HEADERS)
        assert response.status_code == 400

    def test_upload(self, client, processor):
        response = client.post(
            "/imports/upload",
            files={"file": ("my deck.txt", b"1 Sol Ring\n", "text/plain")},
            data={"source": "text", "options": '{"continue_on_error": true}'},
            headers=HEADERS,
        )

        assert response.status_code == 201
        job = response.json()["job"]
        assert job["file_name"].endswith("_mydeck.txt")
        assert job["options"]["continue_on_error"] is True
        assert processor.process_job(job["id"])["status"] == "completed"

    def test_upload_rejects_other_extensions(self, client):
        response = client.post("/imports/upload", files={"file": ("deck.exe", b"MZ", "application/octet-stream")},
                               data={"source": "text"}, headers=HEADERS)
        assert response.status_code == 400

    def test_file_name_must_be_an_upload(self, client):
        response = client.post("/imports", json={"source": "text", "file_name": "/etc/passwd"}, headers=HEADERS)
        assert response.status_code == 400


class TestJobEndpoints:
    """Reading and steering jobs."""

    def test_get_list_and_ownership(self, client):
        job = create(client)

        assert client.get(f"/imports/{job['id']}", headers=HEADERS).json()["job"]["id"] == job["id"]
        assert client.get(f"/imports/{job['id']}", headers={"X-User-Id": "other"}).status_code == 404
        listed = client.get("/imports", params={"status": "pending"}, headers=HEADERS).json()
        assert [j["id"] for j in listed["jobs"]] == [job["id"]]
        assert client.get("/imports", headers={"X-User-Id": "other"}).json()["total"] == 0

    def test_progress_and_items(self, client, processor):
        job = create(client)
        processor.process_job(job["id"])

        progress = client.get(f"/imports/{job['id']}/progress", headers=HEADERS).json()
        assert (progress["status"], progress["progress"]) == ("completed", 100)
        assert (progress["items_completed"], progress["items_total"]) == (1, 1)

        items = client.get(f"/imports/{job['id']}/items", headers=HEADERS).json()["items"]
        assert items[0]["cards_imported"] == 2

    def test_update_pending_job(self, client):
        job = create(client)

        response = client.patch(f"/imports/{job['id']}", json={"priority": 3, "options": {"validate_cards": True}},
                                headers=HEADERS)

        updated = response.json()["job"]
        assert updated["priority"] == 3
        assert updated["options"]["validate_cards"] is True

    def test_update_finished_job_conflicts(self, client, processor):
        job = create(client)
        processor.process_job(job["id"])

        response = client.patch(f"/imports/{job['id']}", json={"priority": 3}, headers=HEADERS)
        assert response.status_code == 409

    def test_cancel(self, client):
        job = create(client)

        assert client.post(f"/imports/{job['id']}/cancel", headers=HEADERS).json()["job"]["status"] == "cancelled"
        response = client.post(f"/imports/{job['id']}/cancel", headers=HEADERS)
        assert response.status_code == 409
        assert response.json()["detail"]["type"] == "conflict_error"

    def test_queue_stats(self, client):
        create(client)

        stats = client.get("/imports/queue/stats").json()
        assert (stats["pending"], stats["queue_length"]) == (1, 1)


class TestConflictAndPreviewEndpoints:
    def test_conflict_resolution_flow(self, client, db, processor, dispatcher):
        db.add(Deck(user_id=TEST_USER, name="Taken"))
        db.commit()
        job = create(client, raw_data="// Deck: Taken\n1 Sol Ring")
        processor.process_job(job["id"])

        conflicts = client.get(f"/imports/{job['id']}/conflicts", headers=HEADERS).json()["conflicts"]
        assert [c["conflict_type"] for c in conflicts] == ["duplicate-deck-name"]

        bad = client.post(f"/imports/{job['id']}/conflicts/resolve",
                          json={"conflict_id": conflicts[0]["id"], "resolution": "ask_user"}, headers=HEADERS)
        assert bad.status_code == 400

        response = client.post(f"/imports/{job['id']}/conflicts/resolve",
                               json={"conflict_id": conflicts[0]["id"], "resolution": "rename"}, headers=HEADERS)
        assert response.json()["conflict"]["resolution"] == "rename"
        assert dispatcher.jobs == [job["id"], job["id"]]

    def test_preview_flow(self, client, processor):
        job = create(client, options={"generate_preview": True})
        processor.process_job(job["id"])

        preview = client.get(f"/imports/{job['id']}/preview", headers=HEADERS).json()["preview"]
        assert preview["statistics"]["total_cards"] == 2

        response = client.post("/imports/previews/approve", json={"preview_id": preview["id"], "approved": True},
                               headers=HEADERS)
        assert response.json()["preview"]["consumed"] is True
        assert processor.process_job(job["id"])["status"] == "completed"

    def test_expired_preview_is_gone(self, client, processor, clock):
        job = create(client, options={"generate_preview": True, "preview_timeout": 1000})
        processor.process_job(job["id"])
        preview = client.get(f"/imports/{job['id']}/preview", headers=HEADERS).json()["preview"]
        clock.advance(seconds=5)

        response = client.post("/imports/previews/approve", json={"preview_id": preview["id"], "approved": True},
                               headers=HEADERS)
        assert response.status_code == 410

    def test_missing_preview(self, client):
        job = create(client)
        assert client.get(f"/imports/{job['id']}/preview", headers=HEADERS).status_code == 404
        assert client.post(f"/imports/{job['id']}/preview", headers=HEADERS).status_code == 409


class TestRollbackEndpoints:
    def test_request_and_read_rollback(self, client, processor, dispatcher):
        job = create(client)
        processor.process_job(job["id"])

        response = client.post("/imports/rollbacks", json={"import_job_id": job["id"], "reason": "oops"},
                               headers=HEADERS)

        assert response.status_code == 202
        operation = response.json()["rollback"]
        assert operation["status"] == "pending"
        assert dispatcher.rollbacks == [operation["id"]]
        fetched = client.get(f"/imports/rollbacks/{operation['id']}", headers=HEADERS).json()["rollback"]
        assert fetched["description"] == "oops"

    def test_rollback_of_pending_job_conflicts(self, client):
        job = create(client)

        response = client.post("/imports/rollbacks", json={"import_job_id": job["id"]}, headers=HEADERS)
        assert response.status_code == 409

    def test_unknown_rollback(self, client):
        assert client.get("/imports/rollbacks/rb_missing", headers=HEADERS).status_code == 404
