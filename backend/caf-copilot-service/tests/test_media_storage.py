import httpx
import pytest

from media_storage import (
    LocalMediaStorage,
    VercelBlobMediaStorage,
    build_media_storage,
    guess_upload_extension,
    resolve_local_media_file,
)


def test_local_storage_writes_file_and_returns_served_url(tmp_path, monkeypatch):
    monkeypatch.setenv("CAF_LOCAL_DATA_DIR", str(tmp_path))
    storage = LocalMediaStorage(public_base_url="http://caf.test/")

    stored = storage.store(b"jpeg-bytes", "Leaking Tap (1).jpg", "image/jpeg")

    name = stored.url.rsplit("/", 1)[-1]
    assert stored.url == f"http://caf.test/media/{name}"
    assert stored.pathname.startswith("cases/")
    assert stored.pathname.endswith("Leaking-Tap-1.jpg")
    assert stored.content_type == "image/jpeg"
    assert (tmp_path / "media" / name).read_bytes() == b"jpeg-bytes"
    assert resolve_local_media_file(name) == (tmp_path / "media" / name).resolve()


def test_resolve_local_media_file_refuses_traversal(tmp_path, monkeypatch):
    monkeypatch.setenv("CAF_LOCAL_DATA_DIR", str(tmp_path))
    (tmp_path / "secret.txt").write_text("nope")

    assert resolve_local_media_file("../secret.txt") is None
    assert resolve_local_media_file(".hidden") is None
    assert resolve_local_media_file("missing.jpg") is None


def test_extension_falls_back_to_content_type():
    assert guess_upload_extension("photo", "image/png") == ".png"
    assert guess_upload_extension("clip.MOV", "video/quicktime") == ".mov"
    assert guess_upload_extension("", "application/x-unknown") == ".bin"


def test_vercel_blob_upload_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(
            200,
            json={
                "url": "https://blob.test/cases/tap-abc.jpg",
                "pathname": "cases/tap-abc.jpg",
                "contentType": "image/jpeg",
            },
        )

    storage = VercelBlobMediaStorage(token="blob-token", transport=httpx.MockTransport(handler))
    stored = storage.store(b"jpeg-bytes", "tap.jpg", "image/jpeg")

    assert seen["method"] == "PUT"
    assert seen["url"].startswith("https://blob.vercel-storage.com/cases/")
    assert seen["headers"]["Authorization"] == "Bearer blob-token"
    assert seen["headers"]["x-content-type"] == "image/jpeg"
    assert seen["headers"]["x-add-random-suffix"] == "1"
    assert seen["body"] == b"jpeg-bytes"
    assert stored.url == "https://blob.test/cases/tap-abc.jpg"
    assert stored.pathname == "cases/tap-abc.jpg"


def test_vercel_blob_requires_token():
    with pytest.raises(RuntimeError):
        VercelBlobMediaStorage(token="")


def test_build_media_storage_rejects_unknown_backend():
    with pytest.raises(ValueError):
        build_media_storage("s3")
    assert build_media_storage("local").backend_name == "local"
