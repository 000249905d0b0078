import importlib
import os
import sqlite3
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from marketsync.services.blob_store import LocalBlobStore, UploadedFile, blob_store_from_env
from marketsync.services.document_store import OrderBy, Query, store_from_env, where
from marketsync.services.user_directory import UserDirectory


def test_auth_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "not-a-number")
    sys.modules.pop("marketsync.auth", None)
    auth = importlib.import_module("marketsync.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_auth_ttl_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("AUTH_TOKEN_TTL_HOURS", "0")
    sys.modules.pop("marketsync.auth", None)
    auth = importlib.import_module("marketsync.auth")
    assert auth.TOKEN_TTL_HOURS == 24


def test_tampered_token_is_rejected():
    auth = importlib.import_module("marketsync.auth")
    token, _ = auth.create_access_token("user_1")
    assert auth.verify_access_token(token) == "user_1"
    assert auth.verify_access_token(token[:-2] + "xx") is None
    assert auth.verify_access_token("garbage") is None
    assert auth.parse_bearer_token("Basic abc") is None


@pytest.mark.asyncio
async def test_store_from_env_skips_malformed_index_declarations(monkeypatch, tmp_path):
    monkeypatch.setenv("MARKETSYNC_DB_PATH", str(tmp_path / "env.sqlite3"))
    monkeypatch.setenv("MARKETSYNC_INDEXES", "bogus, serviceRequests:providerId:createdAt")
    monkeypatch.setenv("MARKETSYNC_BLOCKED_COLLECTIONS", "")
    store = store_from_env()
    try:
        snapshot = await store.query(
            Query("serviceRequests", (where("providerId", "==", "p1"),), OrderBy("createdAt", "desc"))
        )
        assert snapshot.empty
    finally:
        store.close()


@pytest.mark.asyncio
async def test_directory_tolerates_corrupt_profile_fields(store, tmp_path):
    with sqlite3.connect(store.db_path) as conn:
        conn.execute(
            "INSERT INTO documents (path, collection, doc_id, data_json) VALUES (?, ?, ?, ?)",
            ("users/u1", "users", "u1", '{"displayName": null, "name": 42, "role": ""}'),
        )
        conn.commit()
    detail = await UserDirectory(store).lookup("u1")
    assert detail.name == "42"
    assert detail.role == "user"


@pytest.mark.asyncio
async def test_blob_store_sanitizes_paths(tmp_path):
    blob_store = LocalBlobStore(root_dir=str(tmp_path / "uploads"), base_url="/uploads/")
    url = await blob_store.upload(
        UploadedFile(filename="../site plan.pdf", content=b"%PDF"),
        folder="serviceRequests/../r1/updates",
    )
    assert url.startswith("/uploads/serviceRequests/r1/updates/")
    assert url.endswith("_.._site_plan.pdf")
    written = list((tmp_path / "uploads").rglob("*.pdf"))
    assert len(written) == 1
    assert written[0].read_bytes() == b"%PDF"


def test_blob_store_is_optional(monkeypatch):
    monkeypatch.delenv("UPLOADS_DIR", raising=False)
    assert blob_store_from_env() is None
