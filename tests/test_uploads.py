import io

import pytest
from fastapi import UploadFile

import uploads
from errors import ServerError, ValidationError
from uploads import ImageKind, ImageSource, resolve_images


@pytest.mark.parametrize(
    "value, kind",
    [
        ("https://img.bookmail.com/a.jpg", ImageKind.REMOTE_URL),
        ("data:image/png;base64,iVBORw0KGgo=", ImageKind.DATA_URI),
        ("covers/a.jpg", ImageKind.LOCAL_PATH),
    ],
)
def test_image_source_from_string(value, kind):
    assert ImageSource.from_string(value).kind is kind


@pytest.mark.parametrize("value", ["file:///sdcard/a.jpg", "content://media/1", "/data/user/0/a.jpg"])
def test_device_paths_are_rejected(value):
    with pytest.raises(ValidationError):
        ImageSource.from_string(value)


def test_remote_urls_pass_through_without_image_host(monkeypatch):
    monkeypatch.delenv("CLOUDINARY_URL", raising=False)
    monkeypatch.delenv("CLOUDINARY_CLOUD_NAME", raising=False)
    assert resolve_images(["https://img.bookmail.com/a.jpg", " "]) == ["https://img.bookmail.com/a.jpg"]


def test_data_uri_needs_image_host(monkeypatch):
    monkeypatch.delenv("CLOUDINARY_URL", raising=False)
    monkeypatch.delenv("CLOUDINARY_CLOUD_NAME", raising=False)
    with pytest.raises(ServerError):
        resolve_images(["data:image/png;base64,iVBORw0KGgo="])


def test_uploaded_files_win_over_urls(monkeypatch):
    uploaded = []
    monkeypatch.setattr(uploads, "upload_image", lambda source: uploaded.append(source) or f"https://cdn.bookmail.com/{source.filename}")
    files = [UploadFile(file=io.BytesIO(b"img"), filename="front.jpg")]

    assert resolve_images(["https://img.bookmail.com/ignored.jpg"], files) == ["https://cdn.bookmail.com/front.jpg"]
    assert uploaded[0].kind is ImageKind.UPLOAD_HANDLE


def test_too_many_images():
    urls = [f"https://img.bookmail.com/{i}.jpg" for i in range(uploads.MAX_IMAGES + 1)]
    with pytest.raises(ValidationError):
        resolve_images(urls)
