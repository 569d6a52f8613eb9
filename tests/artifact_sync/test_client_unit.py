"""Unit tests for ArtifactAPIClient.

Requests are served by httpx.MockTransport; backoff delays are zeroed so
retries run immediately.
"""

import asyncio
import json
from typing import Callable, List

import httpx
import pytest

from src.artifact_sync.backend import ArtifactAPIClient, BackendAPIError
from src.artifact_sync.errors import ErrorKind, NetworkFailureError
from src.artifact_sync.state.models import ArtifactStatus, Tone


def run_async(coro):
    return asyncio.run(coro)


ARTIFACT_JSON = {
    "id": "art-1",
    "type": "blog",
    "status": "writing",
    "title": "Sync engines",
    "content": "Draft",
    "tone": "technical",
    "tags": ["sync", "python"],
    "updated_at": "2024-05-01T12:00:01Z",
}


def _client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> ArtifactAPIClient:
    return ArtifactAPIClient(
        "https://api.example.com/",
        token="user-jwt",
        base_delay=0.0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class Recorder:
    """Serves queued responses and records requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(
            template.status_code,
            content=template.content,
            headers=template.headers,
        )


# ---------------------------------------------------------------------------
# Artifact record
# ---------------------------------------------------------------------------


def test_get_artifact_parses_record_and_sends_token():
    recorder = Recorder(httpx.Response(200, json=ARTIFACT_JSON))

    async def scenario():
        async with _client(recorder) as client:
            return await client.get_artifact("art-1")

    artifact = run_async(scenario())
    request = recorder.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/api/artifacts/art-1"
    assert request.headers["Authorization"] == "Bearer user-jwt"
    assert artifact.status == ArtifactStatus.WRITING
    assert artifact.tone == Tone.TECHNICAL
    assert artifact.tags == {"sync", "python"}


def test_get_artifact_accepts_envelope():
    recorder = Recorder(httpx.Response(200, json={"artifact": ARTIFACT_JSON}))
    artifact = run_async(_client(recorder).get_artifact("art-1"))
    assert artifact.id == "art-1"


def test_get_is_retried_on_transient_status():
    recorder = Recorder(
        httpx.Response(503, text="unavailable"),
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, json=ARTIFACT_JSON),
    )
    artifact = run_async(_client(recorder).get_artifact("art-1"))
    assert artifact.id == "art-1"
    assert len(recorder.requests) == 3


def test_get_gives_up_after_max_retries():
    recorder = Recorder(httpx.Response(500, text="boom"))

    with pytest.raises(BackendAPIError) as exc_info:
        run_async(_client(recorder, max_retries=2).get_artifact("art-1"))

    error = exc_info.value
    assert len(recorder.requests) == 3
    assert error.status_code == 500
    assert error.response_body == "boom"
    assert isinstance(error, NetworkFailureError)
    assert error.kind == ErrorKind.NETWORK_FAILURE


def test_client_error_is_not_retried():
    recorder = Recorder(httpx.Response(404, json={"error": "Artifact not found"}))

    with pytest.raises(BackendAPIError) as exc_info:
        run_async(_client(recorder).get_artifact("missing"))

    assert len(recorder.requests) == 1
    assert exc_info.value.status_code == 404
    assert exc_info.value.request_url.endswith("/api/artifacts/missing")


def test_connection_errors_are_retried_then_reported():
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendAPIError) as exc_info:
        run_async(_client(handler, max_retries=1).get_artifact("art-1"))

    assert len(attempts) == 2
    assert exc_info.value.status_code is None
    assert "connection refused" in exc_info.value.message


def test_invalid_payload_raises_backend_error():
    recorder = Recorder(httpx.Response(200, json={"status": "nonsense"}))
    with pytest.raises(BackendAPIError):
        run_async(_client(recorder).get_artifact("art-1"))


def test_update_artifact_serialises_enums_and_sets():
    recorder = Recorder(httpx.Response(200, json={**ARTIFACT_JSON, "status": "ready"}))

    record = run_async(
        _client(recorder).update_artifact(
            "art-1", {"status": ArtifactStatus.READY, "tags": {"b", "a"}}
        )
    )

    request = recorder.requests[0]
    assert request.method == "PATCH"
    assert json.loads(request.content) == {"status": "ready", "tags": ["a", "b"]}
    assert record.status == ArtifactStatus.READY


# ---------------------------------------------------------------------------
# Pipeline actions
# ---------------------------------------------------------------------------


def test_approve_foundations_sends_edits_and_parses_new_status():
    recorder = Recorder(httpx.Response(200, json={"success": True, "newStatus": "writing"}))

    status = run_async(_client(recorder).approve_foundations("art-1", "# Edited"))

    request = recorder.requests[0]
    assert request.url.path == "/api/artifacts/art-1/approve-foundations"
    assert json.loads(request.content) == {"skeleton_content": "# Edited"}
    assert status == ArtifactStatus.WRITING


def test_approve_foundations_without_status():
    recorder = Recorder(httpx.Response(200, json={"success": True}))
    assert run_async(_client(recorder).approve_foundations("art-1")) is None
    assert json.loads(recorder.requests[0].content) == {}


def test_approve_foundations_is_never_retried():
    recorder = Recorder(httpx.Response(503, text="unavailable"))

    with pytest.raises(BackendAPIError):
        run_async(_client(recorder).approve_foundations("art-1"))

    assert len(recorder.requests) == 1


def test_unknown_status_in_approval_response():
    recorder = Recorder(httpx.Response(200, json={"newStatus": "archived"}))
    with pytest.raises(BackendAPIError):
        run_async(_client(recorder).approve_foundations("art-1"))


def test_image_actions_hit_their_endpoints_once():
    recorder = Recorder(httpx.Response(200, json={"success": True}))
    client = _client(recorder)

    async def scenario():
        await client.approve_images("art-1", ["n1"], ["n2"])
        await client.generate_images("art-1")
        await client.regenerate_image("art-1", "img-1", "A calmer palette")
        await client.close()

    run_async(scenario())
    paths = [request.url.path for request in recorder.requests]
    assert paths == [
        "/api/artifacts/art-1/images/approve",
        "/api/artifacts/art-1/images/generate",
        "/api/artifacts/art-1/images/img-1/regenerate",
    ]
    assert json.loads(recorder.requests[0].content) == {
        "approvedIds": ["n1"],
        "rejectedIds": ["n2"],
    }
    assert json.loads(recorder.requests[2].content) == {"description": "A calmer palette"}


def test_regenerate_failure_is_not_retried():
    recorder = Recorder(httpx.Response(500, text="generation failed"))
    with pytest.raises(BackendAPIError):
        run_async(_client(recorder).regenerate_image("art-1", "img-1", "again"))
    assert len(recorder.requests) == 1


# ---------------------------------------------------------------------------
# Research
# ---------------------------------------------------------------------------


def test_research_round_trip():
    entry = {
        "id": "r1",
        "source_type": "manual",
        "source_name": "Notes",
        "excerpt": "Key finding",
        "relevance_score": 1.0,
    }
    recorder = Recorder(
        httpx.Response(200, json={"research": [entry]}),
        httpx.Response(201, json=entry),
        httpx.Response(204),
    )
    client = _client(recorder)

    async def scenario():
        listed = await client.list_research("art-1")
        added = await client.add_research("art-1", "manual", "Notes", "Key finding")
        await client.delete_research("art-1", "r1")
        return listed, added

    listed, added = run_async(scenario())
    assert [item.id for item in listed] == ["r1"]
    assert added.source_name == "Notes"
    assert [r.method for r in recorder.requests] == ["GET", "POST", "DELETE"]
    assert recorder.requests[2].url.path == "/api/artifacts/art-1/research/r1"
