import asyncio
import io
import os
import threading

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from pulsechat import config, uploads


class ResetStream(io.BytesIO):
    """Delivers the first chunk, then fails like a dropped client."""

    def read(self, size=-1):
        if self.tell() > 0:
            raise OSError("connection reset by peer")
        return super().read(size)


def _upload(stream, name="clip.mp4", content_type="video/mp4"):
    return UploadFile(file=stream, filename=name, headers=Headers({"content-type": content_type}))


@pytest.fixture
def uploads_dir(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "UPLOADS_DIR", str(tmp_path))
    monkeypatch.setattr(config, "CLOUDINARY_ENABLED", False)
    return tmp_path


def test_broken_stream_leaves_no_partial_file(uploads_dir, monkeypatch):
    monkeypatch.setattr(config, "UPLOAD_CHUNK_BYTES", 512)

    with pytest.raises(OSError):
        asyncio.run(uploads.save_upload(_upload(ResetStream(b"x" * 4096)), uploaded_by="u1"))

    assert os.listdir(uploads_dir) == []


def test_cloudinary_push_runs_off_the_event_loop(uploads_dir, monkeypatch):
    monkeypatch.setattr(config, "CLOUDINARY_ENABLED", True)
    seen = {}

    def fake_upload(path, **kwargs):
        seen["thread"] = threading.get_ident()
        seen["path"] = path
        seen["kwargs"] = kwargs
        return {"secure_url": "https://res.cloudinary.com/demo/video/upload/clip.mp4"}

    monkeypatch.setattr(uploads.cloudinary.uploader, "upload", fake_upload)

    meta = asyncio.run(uploads.save_upload(_upload(io.BytesIO(b"mp4")), uploaded_by="u1"))

    assert seen["thread"] != threading.get_ident()
    assert seen["kwargs"]["resource_type"] == "video"
    assert seen["kwargs"]["folder"] == "pulsechat/uploads"
    assert meta.file_url == "https://res.cloudinary.com/demo/video/upload/clip.mp4"
    assert meta.is_local is False
    assert os.path.isfile(seen["path"])


def test_cloudinary_failure_keeps_local_copy(uploads_dir, monkeypatch):
    monkeypatch.setattr(config, "CLOUDINARY_ENABLED", True)

    def boom(path, **kwargs):
        raise RuntimeError("cloudinary down")

    monkeypatch.setattr(uploads.cloudinary.uploader, "upload", boom)

    meta = asyncio.run(uploads.save_upload(_upload(io.BytesIO(b"png"), "a.png", "image/png"), uploaded_by="u1"))

    assert meta.file_url == f"/uploads/{meta.filename}"
    assert meta.file_type == "image"
    assert uploads.blob_exists(meta) is True
