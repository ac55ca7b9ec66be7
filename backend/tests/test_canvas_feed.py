from __future__ import annotations

import httpx
import pytest

from app.canvas_feed import CanvasFeedClient, CanvasFeedError
from app.config import Settings

API = "https://canvas.example.edu/api/v1"


def _client(handler) -> CanvasFeedClient:
    transport = httpx.MockTransport(handler)
    return CanvasFeedClient("canvas.example.edu", "secret-token", client=httpx.Client(transport=transport))


def test_fetch_follows_pagination_and_maps_rows() -> None:
    seen_auth = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_auth.append(request.headers.get("Authorization"))
        path = request.url.path
        if path == "/api/v1/courses":
            return httpx.Response(200, json=[{"id": 7, "name": "Biology"}])
        if path == "/api/v1/courses/7/assignments" and request.url.params.get("page") == "2":
            return httpx.Response(200, json=[{"id": 102, "name": "Lab Write-up", "due_at": None}])
        if path == "/api/v1/courses/7/assignments":
            return httpx.Response(
                200,
                json=[{"id": 101, "name": "Chapter 3 Quiz", "due_at": "2026-09-18T23:59:00Z", "course_id": 7}],
                headers={"Link": f'<{API}/courses/7/assignments?page=2&per_page=100>; rel="next"'},
            )
        return httpx.Response(404)

    with _client(handler) as client:
        batch = client.fetch_assignments("alex")

    assert batch.failed_courses == []
    assert [record["title"] for record in batch.records] == ["Chapter 3 Quiz", "Lab Write-up"]
    first = batch.records[0]
    assert first["student_id"] == "alex"
    assert first["course"] == "Biology"
    assert first["source_id"] == 101
    assert first["source_course_id"] == 7
    assert set(seen_auth) == {"Bearer secret-token"}


def test_failing_course_is_reported_and_others_still_load() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/courses":
            return httpx.Response(200, json=[{"id": 1, "name": "Art"}, {"id": 2, "name": "Music"}])
        if path == "/api/v1/courses/1/assignments":
            return httpx.Response(500, text="boom")
        return httpx.Response(200, json=[{"id": 9, "name": "Scales"}])

    with _client(handler) as client:
        batch = client.fetch_assignments("alex")

    assert batch.failed_courses == ["1"]
    assert [record["title"] for record in batch.records] == ["Scales"]
    assert batch.records[0]["source_course_id"] == "2"


def test_course_listing_failure_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"errors": [{"message": "Invalid access token."}]})

    with _client(handler) as client:
        with pytest.raises(CanvasFeedError):
            client.fetch_assignments("alex")


def test_non_list_payload_is_rejected() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "unexpected"})

    with _client(handler) as client:
        with pytest.raises(CanvasFeedError):
            client.list_courses()


def test_for_student_requires_configuration() -> None:
    settings = Settings(
        STUDYFLOW_CANVAS_BASE_URL="https://canvas.example.edu",
        STUDYFLOW_CANVAS_TOKENS={"alex": "secret-token"},
    )

    client = CanvasFeedClient.for_student(settings, "alex")
    try:
        assert client.api_root == API
    finally:
        client.close()
    with pytest.raises(CanvasFeedError):
        CanvasFeedClient.for_student(settings, "sam")
