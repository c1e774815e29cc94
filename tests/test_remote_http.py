import asyncio
import json

import pytest
from aiohttp import ClientError

from coachshare.cloudsync import HttpRemoteAuthority, Write, eq
from coachshare.const import COLLECTION_FOLDERS
from coachshare.errors import Conflict, InvitationExpired, NetworkUnavailable, SharingError, Unauthorized

FOLDER_DOC = {
    "collection": COLLECTION_FOLDERS,
    "id": "folder-1",
    "data": {"id": "folder-1", "name": "Film"},
    "versions": {"details": 2, "membership": 1},
    "updatedAt": {"details": "2025-03-01T12:00:00Z"},
}


class DummyResp:
    def __init__(self, status, data=None):
        self.status = status
        self._text = "" if data is None else (data if isinstance(data, str) else json.dumps(data))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return self._text


class Session:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "json": json, "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def remote_for(session):
    return HttpRemoteAuthority(
        session,
        "https://authority.example/",
        subject_id="coach-1",
        role="coach",
        email="cole@example.com",
    )


@pytest.mark.asyncio
async def test_get_sends_identity_headers():
    session = Session(DummyResp(200, {"document": FOLDER_DOC}))
    remote = remote_for(session)

    document = await remote.get(COLLECTION_FOLDERS, "folder-1")

    assert document.version("details") == 2
    assert document.updated_at["details"].year == 2025
    (call,) = session.calls
    assert call["url"] == "https://authority.example/documents/sharedFolders/folder-1"
    assert call["headers"]["X-Subject-ID"] == "coach-1"
    assert call["headers"]["X-Role"] == "coach"
    assert call["headers"]["X-Email"] == "cole@example.com"


@pytest.mark.asyncio
async def test_get_missing_returns_none():
    session = Session(DummyResp(404, {"error": "not_found", "detail": "gone"}))
    assert await remote_for(session).get(COLLECTION_FOLDERS, "folder-1") is None


@pytest.mark.asyncio
async def test_query_and_commit_payloads():
    session = Session(
        DummyResp(200, {"documents": [FOLDER_DOC]}),
        DummyResp(200, {"documents": [FOLDER_DOC, None]}),
    )
    remote = remote_for(session)

    documents = await remote.query(COLLECTION_FOLDERS, eq("ownerAthleteID", "athlete-1"))
    assert [doc.id for doc in documents] == ["folder-1"]
    assert session.calls[0]["json"] == {
        "collection": COLLECTION_FOLDERS,
        "where": [{"field": "ownerAthleteID", "op": "==", "value": "athlete-1"}],
    }

    results = await remote.commit([Write.update(documents[0], {"name": "New"}), Write.delete(documents[0])])
    assert results[0].id == "folder-1"
    assert results[1] is None
    writes = session.calls[1]["json"]["writes"]
    assert writes[0]["expectedVersions"] == {"details": 2}
    assert writes[1]["op"] == "delete"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (DummyResp(409, {"error": "conflict", "detail": "moved"}), Conflict),
        (DummyResp(403, {"detail": {"error": "unauthorized", "detail": "no"}}), Unauthorized),
        (DummyResp(410, {"error": "invitation_expired"}), InvitationExpired),
        (DummyResp(503, "Service Unavailable"), NetworkUnavailable),
        (DummyResp(400, "not json"), SharingError),
        (ClientError("connection reset"), NetworkUnavailable),
        (asyncio.TimeoutError(), NetworkUnavailable),
    ],
)
async def test_errors_are_mapped(response, expected):
    remote = remote_for(Session(response))
    with pytest.raises(expected):
        await remote.commit([Write.create(COLLECTION_FOLDERS, "folder-1", {"name": "x"})])


@pytest.mark.asyncio
async def test_status_reports_last_error():
    session = Session(ClientError("down"), DummyResp(200, {"documents": []}))
    remote = remote_for(session)

    with pytest.raises(NetworkUnavailable):
        await remote.query(COLLECTION_FOLDERS)
    assert remote.status()["last_error"] == "down"

    assert await remote.query(COLLECTION_FOLDERS) == []
    assert remote.status() == {
        "base_url": "https://authority.example",
        "subject_id": "coach-1",
        "last_error": None,
    }


@pytest.mark.asyncio
async def test_register_user():
    session = Session(DummyResp(200, {"user": {"id": "coach-1", "email": "cole@example.com", "role": "coach"}}))
    user = await remote_for(session).register_user({"email": "cole@example.com", "role": "coach"})
    assert user["role"] == "coach"
    assert session.calls[0]["url"].endswith("/users")
