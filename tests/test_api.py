import json

import httpx
import pytest

from backend.app.main import create_app

from tests.factories import PASSWORD, content_of, set_quota

API = "/api/v1"


@pytest.fixture
async def client(settings, services):
    app = create_app(settings, services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def registration_body(username="alice", password=PASSWORD):
    return {
        "email": f"{username}@example.com",
        "username": username,
        "password": password,
        "kdf_salt": "c2FsdHNhbHRzYWx0c2FsdA==",
        "master_key_encrypted": "bWFzdGVyLWtleQ==",
        "public_key": "-----BEGIN PUBLIC KEY-----",
        "private_key_encrypted": "cHJpdmF0ZS1rZXk=",
    }


async def register(client, username="alice"):
    response = await client.post(f"{API}/auth/register", json=registration_body(username))
    assert response.status_code == 201, response.text
    body = response.json()
    return {"Authorization": f"Bearer {body['access_token']}"}, body


def upload_form(size: int, folder_id=None, file_hash=None):
    metadata = {
        "filename_encrypted": "ZW5jcnlwdGVkLW5hbWU=",
        "filename_iv": "aXYtMTIzNDU2Nzg=",
        "file_key_encrypted": "ZmlsZS1rZXk=",
        "file_size": size,
        "encrypted_size": size,
        "file_hash": file_hash or f"hash-{size}",
        "mime_type": "text/plain",
        "parent_folder_id": folder_id,
    }
    return {"metadata": json.dumps(metadata)}, {"file": ("blob.enc", content_of(size), "application/octet-stream")}


async def upload(client, headers, size: int, **kwargs):
    data, files = upload_form(size, **kwargs)
    return await client.post(f"{API}/files", data=data, files=files, headers=headers)


# --- Basics ---

async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_unauthenticated_requests(client):
    response = await client.get(f"{API}/auth/me")
    assert response.status_code == 401
    assert response.json() == {"error": "Auth", "message": "No token provided"}

    response = await client.get(f"{API}/files", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401
    assert response.json()["error"] == "Auth"


async def test_request_validation_error_shape(client):
    response = await client.post(f"{API}/auth/register", json={"email": "not-an-email"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Validation"
    assert body["details"]["errors"]


# --- Auth ---

async def test_register_login_logout(client):
    headers, body = await register(client)
    assert body["token_type"] == "bearer"
    assert "password_hash" not in body["user"]
    assert body["user"]["storage_used"] == 0

    me = await client.get(f"{API}/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["username"] == "alice"

    login = await client.post(f"{API}/auth/login", json={"identifier": "alice@example.com", "password": PASSWORD})
    assert login.status_code == 200
    assert login.json()["totp_required"] is False
    second = {"Authorization": f"Bearer {login.json()['access_token']}"}

    sessions = await client.get(f"{API}/auth/sessions", headers=second)
    assert len(sessions.json()) == 2
    assert sum(s["is_current"] for s in sessions.json()) == 1

    assert (await client.post(f"{API}/auth/logout", headers=headers)).status_code == 200
    assert (await client.get(f"{API}/auth/me", headers=headers)).status_code == 401
    assert (await client.get(f"{API}/auth/me", headers=second)).status_code == 200


async def test_register_conflict_and_weak_password(client):
    await register(client)
    duplicate = await client.post(f"{API}/auth/register", json=registration_body("alice"))
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "Conflict"

    weak = await client.post(f"{API}/auth/register", json=registration_body("bob", password="weakpass"))
    assert weak.status_code == 400
    assert weak.json()["details"]["password"]


async def test_login_failure(client):
    await register(client)
    response = await client.post(f"{API}/auth/login", json={"identifier": "alice", "password": "Wr0ng!Pass"})
    assert response.status_code == 401
    assert response.json() == {"error": "Auth", "message": "Invalid credentials"}


async def test_login_is_rate_limited_per_address(client):
    credentials = {"identifier": "nobody", "password": "Wr0ng!Pass"}
    for _ in range(5):
        response = await client.post(f"{API}/auth/login", json=credentials)
        assert response.status_code == 401

    limited = await client.post(f"{API}/auth/login", json=credentials)
    assert limited.status_code == 429
    assert limited.json()["error"] == "RateLimited"

    # Register shares the login budget
    assert (await client.post(f"{API}/auth/register", json=registration_body("carol"))).status_code == 429


async def test_rate_limits_can_be_disabled(settings, services):
    settings.RATE_LIMIT_ENABLED = False
    app = create_app(settings, services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        for _ in range(7):
            response = await client.post(f"{API}/auth/login", json={"identifier": "nobody", "password": "Wr0ng!Pass"})
            assert response.status_code == 401


async def test_change_password_logs_out_everywhere(client):
    headers, _ = await register(client)
    response = await client.post(f"{API}/auth/change-password", headers=headers,
                                 json={"current_password": PASSWORD, "new_password": "N3w!Password"})
    assert response.status_code == 200
    assert (await client.get(f"{API}/auth/me", headers=headers)).status_code == 401


async def test_two_factor_setup(client):
    headers, _ = await register(client)
    response = await client.post(f"{API}/auth/2fa/setup", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["uri"].startswith("otpauth://totp/")
    assert body["secret"] in body["uri"]

    rejected = await client.post(f"{API}/auth/2fa/enable", headers=headers,
                                 json={"secret": body["secret"], "code": "abcdef"})
    assert rejected.status_code == 400


# --- Files ---

async def test_upload_download_round_trip(client):
    headers, _ = await register(client)
    response = await upload(client, headers, 300)
    assert response.status_code == 201, response.text
    file = response.json()
    assert file["encrypted_size"] == 300
    assert file["has_thumbnail"] is False

    download = await client.get(f"{API}/files/{file['id']}/download", headers=headers)
    assert download.status_code == 200
    assert download.content == content_of(300)
    assert download.headers["content-length"] == "300"
    assert download.headers["x-original-mime-type"] == "text/plain"

    storage = await client.get(f"{API}/users/me/storage", headers=headers)
    assert storage.json()["storage_used"] == 300


async def test_quota_exceeded_is_402(client):
    headers, _ = await register(client)
    assert (await upload(client, headers, 600)).status_code == 201

    response = await upload(client, headers, 500, file_hash="second")
    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "PaymentRequired"
    assert body["details"]["available"] == 400


async def test_invalid_metadata(client):
    headers, _ = await register(client)
    response = await client.post(
        f"{API}/files", headers=headers,
        data={"metadata": json.dumps({"encrypted_size": 0})},
        files={"file": ("blob.enc", b"", "application/octet-stream")},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Validation"


async def test_trash_and_restore(client):
    headers, _ = await register(client)
    file = (await upload(client, headers, 100)).json()

    assert (await client.delete(f"{API}/files/{file['id']}", headers=headers)).status_code == 204
    assert (await client.get(f"{API}/files/{file['id']}", headers=headers)).status_code == 404

    trash = await client.get(f"{API}/files/trash", headers=headers)
    assert [f["id"] for f in trash.json()["items"]] == [file["id"]]

    restored = await client.post(f"{API}/files/{file['id']}/restore", headers=headers)
    assert restored.status_code == 200
    assert restored.json()["is_deleted"] is False

    response = await client.delete(f"{API}/files/{file['id']}", params={"permanent": "true"}, headers=headers)
    assert response.status_code == 204
    assert (await client.get(f"{API}/users/me/storage", headers=headers)).json()["storage_used"] == 0


async def test_foreign_file_is_404(client):
    alice, _ = await register(client, "alice")
    bob, _ = await register(client, "bob")
    file = (await upload(client, alice, 100)).json()

    response = await client.get(f"{API}/files/{file['id']}", headers=bob)
    assert response.status_code == 404
    assert response.json() == {"error": "NotFound", "message": "File not found"}


async def test_versions(client):
    headers, _ = await register(client)
    file = (await upload(client, headers, 100)).json()

    response = await client.post(
        f"{API}/files/{file['id']}/versions", headers=headers,
        data={"metadata": json.dumps({"file_key_encrypted": "djI=", "file_size": 40})},
        files={"file": ("v2.enc", content_of(40), "application/octet-stream")},
    )
    assert response.status_code == 201, response.text
    assert response.json()["version_number"] == 2

    versions = await client.get(f"{API}/files/{file['id']}/versions", headers=headers)
    assert [v["version_number"] for v in versions.json()] == [2]

    download = await client.get(f"{API}/files/{file['id']}/versions/2/download", headers=headers)
    assert download.content == content_of(40)


# --- Folders ---

async def test_folder_cascade_over_http(client):
    headers, _ = await register(client)
    folder = (await client.post(f"{API}/folders", headers=headers,
                                json={"name_encrypted": "Zm9sZGVy", "name_iv": "aXY="})).json()
    child = (await client.post(f"{API}/folders", headers=headers,
                               json={"name_encrypted": "Y2hpbGQ=", "name_iv": "aXY=",
                                     "parent_folder_id": folder["id"]})).json()
    await upload(client, headers, 100, folder_id=child["id"])

    cycle = await client.patch(f"{API}/folders/{folder['id']}", headers=headers,
                               json={"parent_folder_id": child["id"]})
    assert cycle.status_code == 400

    contents = await client.get(f"{API}/folders/{child['id']}", headers=headers)
    assert [b["id"] for b in contents.json()["breadcrumbs"]] == [folder["id"], child["id"]]
    assert len(contents.json()["files"]) == 1

    not_empty = await client.delete(f"{API}/folders/{folder['id']}", headers=headers)
    assert not_empty.status_code == 400

    deleted = await client.delete(f"{API}/folders/{folder['id']}", params={"cascade": "true"}, headers=headers)
    assert deleted.json() == {"folders": 2, "files": 1, "bytes_released": 100, "permanent": False}

    restored = await client.post(f"{API}/folders/{folder['id']}/restore", headers=headers)
    assert restored.json()["restored_files"] == 1

    tree = await client.get(f"{API}/folders/tree", headers=headers)
    assert tree.json()[0]["children"][0]["id"] == child["id"]


# --- Shares ---

async def test_public_share_flow(client):
    headers, _ = await register(client)
    file = (await upload(client, headers, 100)).json()

    share = (await client.post(f"{API}/shares", headers=headers, json={
        "file_id": file["id"], "file_key_encrypted": "bGluaw==", "password": "open sesame", "max_downloads": 1,
    })).json()
    assert share["has_password"] is True
    assert "password_hash" not in share
    token = share["share_token"]

    locked = await client.get(f"{API}/shares/public/{token}")
    assert locked.status_code == 401
    assert locked.json()["details"] == {"password_required": True}

    password = {"X-Share-Password": "open sesame"}
    metadata = await client.get(f"{API}/shares/public/{token}", headers=password)
    assert metadata.status_code == 200
    assert metadata.json()["downloads_remaining"] == 1
    assert "owner_id" not in metadata.json()

    download = await client.get(f"{API}/shares/public/{token}/download", headers=password)
    assert download.status_code == 200
    assert download.content == content_of(100)

    exhausted = await client.get(f"{API}/shares/public/{token}/download", headers=password)
    assert exhausted.status_code == 404
    assert exhausted.json()["message"] == "Share link is not available"

    stats = await client.get(f"{API}/shares/files/{file['id']}/stats", headers=headers)
    assert stats.json()["total_downloads"] == 1


async def test_public_share_lookups_are_rate_limited(client):
    for _ in range(30):
        assert (await client.get(f"{API}/shares/public/no-such-token")).status_code == 404
    limited = await client.get(f"{API}/shares/public/no-such-token/download")
    assert limited.status_code == 429


async def test_revoked_share_over_http(client):
    headers, _ = await register(client)
    file = (await upload(client, headers, 100)).json()
    share = (await client.post(f"{API}/shares", headers=headers,
                               json={"file_id": file["id"], "file_key_encrypted": "bGluaw=="})).json()

    revoked = await client.post(f"{API}/shares/{share['id']}/revoke", headers=headers)
    assert revoked.json()["is_active"] is False
    assert (await client.get(f"{API}/shares/public/{share['share_token']}")).status_code == 404

    assert (await client.delete(f"{API}/shares/{share['id']}", headers=headers)).status_code == 204
    listing = await client.get(f"{API}/shares", headers=headers)
    assert listing.json()["total"] == 0


# --- Users ---

async def test_audit_log_and_account_deletion(client, services):
    headers, body = await register(client)
    await set_quota(services, body["user"]["id"], 10_000)
    await upload(client, headers, 5_000)

    logs = await client.get(f"{API}/users/me/audit-logs", headers=headers)
    actions = [entry["action"] for entry in logs.json()["items"]]
    assert "user.register" in actions and "file.upload" in actions

    wrong = await client.request("DELETE", f"{API}/users/me", headers=headers, json={"password": "Wr0ng!Pass"})
    assert wrong.status_code == 401

    deleted = await client.request("DELETE", f"{API}/users/me", headers=headers, json={"password": PASSWORD})
    assert deleted.status_code == 204
    assert (await client.get(f"{API}/auth/me", headers=headers)).status_code == 401
