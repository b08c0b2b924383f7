"""Tests for the Cloudinary image store."""

from unittest.mock import MagicMock

import cloudinary.exceptions
import cloudinary.uploader
import pytest

from src.exceptions import UploadError
from src.infrastructure.image_store import CloudinaryImageStore

UPLOADED = {
    "secure_url": "https://res.cloudinary.com/demo/image/upload/x2ig/u1/card.png",
    "public_id": "x2ig/u1/card",
    "width": 1080,
    "height": 1080,
}


@pytest.fixture
def store():
    return CloudinaryImageStore(cloud_name="demo", api_key="key", api_secret="secret")


@pytest.fixture
def sdk_upload(monkeypatch):
    mock = MagicMock(return_value=UPLOADED)
    monkeypatch.setattr(cloudinary.uploader, "upload", mock)
    return mock


@pytest.fixture
def sdk_destroy(monkeypatch):
    mock = MagicMock(return_value={"result": "ok"})
    monkeypatch.setattr(cloudinary.uploader, "destroy", mock)
    return mock


class TestUpload:
    """Tests for CloudinaryImageStore.upload."""

    async def test_upload_returns_secure_url_and_size(self, store, sdk_upload):
        result = await store.upload(b"\x89PNG", folder="x2ig/u1")

        assert result.url == UPLOADED["secure_url"]
        assert result.id == "x2ig/u1/card"
        assert (result.width, result.height) == (1080, 1080)
        stream = sdk_upload.call_args.args[0]
        assert stream.read() == b"\x89PNG"
        assert sdk_upload.call_args.kwargs["folder"] == "x2ig/u1"
        assert sdk_upload.call_args.kwargs["resource_type"] == "image"

    async def test_sdk_error_becomes_upload_error(self, store, sdk_upload):
        sdk_upload.side_effect = cloudinary.exceptions.Error("Invalid Signature")

        with pytest.raises(UploadError, match="Invalid Signature"):
            await store.upload(b"\x89PNG")

    async def test_missing_secure_url_is_an_error(self, store, sdk_upload):
        sdk_upload.return_value = {"public_id": "x"}

        with pytest.raises(UploadError, match="No result returned"):
            await store.upload(b"\x89PNG")

    async def test_unconfigured_store_refuses_to_upload(self, sdk_upload):
        store = CloudinaryImageStore(cloud_name="", api_key="", api_secret="")

        with pytest.raises(UploadError, match="not configured"):
            await store.upload(b"\x89PNG")

        sdk_upload.assert_not_called()


class TestDelete:
    async def test_delete_destroys_public_id(self, store, sdk_destroy):
        await store.delete("x2ig/u1/card")

        assert sdk_destroy.call_args.args == ("x2ig/u1/card",)

    async def test_missing_image_is_not_an_error(self, store, sdk_destroy):
        sdk_destroy.return_value = {"result": "not found"}

        await store.delete("x2ig/u1/gone")

    async def test_sdk_error_becomes_upload_error(self, store, sdk_destroy):
        sdk_destroy.side_effect = cloudinary.exceptions.Error("rate limited")

        with pytest.raises(UploadError, match="rate limited"):
            await store.delete("x2ig/u1/card")
