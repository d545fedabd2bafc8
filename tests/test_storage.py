from unittest.mock import MagicMock, patch

import pytest
from google.api_core import exceptions as gcs_exceptions

from backend.errors import StorageOperationFailed, StorageUnavailable
from backend.storage import StorageGateway, build_storage_gateway

from tests.utils import BUCKET_NAME, storage_url


def make_gateway(bucket, start=1234):
    ticks = iter(range(start, start + 100))
    return StorageGateway(bucket, BUCKET_NAME, clock=lambda: next(ticks))


def test_key_replaces_whitespace_and_keeps_extension(bucket):
    gateway = make_gateway(bucket)

    key = gateway.build_key("my  product photo.JPG", "gamma_ortho_products/base_images/")

    assert key == "gamma_ortho_products/base_images/my_product_photo-1234.JPG"


def test_keys_stay_unique_when_clock_stalls(bucket):
    gateway = StorageGateway(bucket, BUCKET_NAME, clock=lambda: 5000)

    first = gateway.build_key("a.png", "f/")
    second = gateway.build_key("a.png", "f/")

    assert first == "f/a-5000.png"
    assert second == "f/a-5001.png"


def test_put_uploads_and_returns_public_url(bucket):
    gateway = make_gateway(bucket)

    url = gateway.put(b"bytes", "pin.png", "products/", "image/png")

    assert url == storage_url("products/pin-1234.png")
    bucket.blob.assert_called_once_with("products/pin-1234.png")
    bucket.blob.return_value.upload_from_string.assert_called_once_with(
        b"bytes", content_type="image/png", predefined_acl="publicRead", retry=None
    )


def test_put_without_public_acl(bucket):
    gateway = StorageGateway(bucket, BUCKET_NAME, public_read=False, clock=lambda: 1)

    gateway.put(b"bytes", "pin.png", "products/", "image/png")

    kwargs = bucket.blob.return_value.upload_from_string.call_args.kwargs
    assert kwargs["predefined_acl"] is None


def test_put_on_uninitialized_gateway_raises():
    gateway = StorageGateway(None, None)

    assert not gateway.is_available()
    with pytest.raises(StorageUnavailable):
        gateway.put(b"bytes", "pin.png", "products/")


def test_put_failure_is_wrapped(bucket):
    bucket.blob.return_value.upload_from_string.side_effect = gcs_exceptions.ServiceUnavailable("down")
    gateway = make_gateway(bucket)

    with pytest.raises(StorageOperationFailed):
        gateway.put(b"bytes", "pin.png", "products/")


def test_delete_extracts_key_from_url(bucket):
    gateway = make_gateway(bucket)

    gateway.delete(storage_url("products/pin-1234.png"))

    bucket.delete_blob.assert_called_once_with("products/pin-1234.png", retry=None)


def test_delete_is_idempotent_for_missing_objects(bucket):
    bucket.delete_blob.side_effect = gcs_exceptions.NotFound("gone")
    gateway = make_gateway(bucket)
    url = storage_url("products/pin-1234.png")

    assert gateway.delete(url) is None
    assert gateway.delete(url) is None
    assert bucket.delete_blob.call_count == 2


@pytest.mark.parametrize(
    "url",
    [
        "https://cdn.example.com/pin.png",
        "https://storage.googleapis.com/other-bucket/pin.png",
        "",
        None,
    ],
)
def test_delete_ignores_urls_outside_the_bucket(bucket, url):
    gateway = make_gateway(bucket)

    gateway.delete(url)

    bucket.delete_blob.assert_not_called()


def test_delete_failure_is_surfaced(bucket):
    bucket.delete_blob.side_effect = gcs_exceptions.Forbidden("nope")
    gateway = make_gateway(bucket)

    with pytest.raises(StorageOperationFailed):
        gateway.delete(storage_url("products/pin.png"))


def test_delete_on_uninitialized_gateway_raises():
    with pytest.raises(StorageUnavailable):
        StorageGateway(None, None).delete(storage_url("products/pin.png"))


def test_public_host_is_configurable(bucket):
    gateway = StorageGateway(bucket, BUCKET_NAME, public_host="cdn.example.com/", clock=lambda: 7)

    assert gateway.put(b"x", "a.png", "f/") == "https://cdn.example.com/test-bucket/f/a-7.png"


def test_build_gateway_without_bucket_is_unavailable():
    gateway = build_storage_gateway({"GCS_BUCKET_NAME": ""})

    assert not gateway.is_available()


def test_build_gateway_with_bad_credentials_is_unavailable():
    gateway = build_storage_gateway(
        {"GCS_BUCKET_NAME": BUCKET_NAME, "GOOGLE_APPLICATION_CREDENTIALS_JSON": "{not json"}
    )

    assert not gateway.is_available()


def test_build_gateway_from_key_file():
    client = MagicMock(name="client")
    with patch("backend.storage.storage.Client") as client_class:
        client_class.from_service_account_json.return_value = client
        gateway = build_storage_gateway(
            {
                "GCS_BUCKET_NAME": BUCKET_NAME,
                "GOOGLE_APPLICATION_CREDENTIALS": "/secrets/key.json",
                "GCS_PUBLIC_READ": False,
            }
        )

    client_class.from_service_account_json.assert_called_once_with("/secrets/key.json")
    client.bucket.assert_called_once_with(BUCKET_NAME)
    assert gateway.is_available()
    assert gateway.bucket is client.bucket.return_value
    assert gateway.public_read is False


def test_build_gateway_from_inline_credentials():
    with patch("backend.storage.storage.Client") as client_class:
        build_storage_gateway(
            {
                "GCS_BUCKET_NAME": BUCKET_NAME,
                "GOOGLE_APPLICATION_CREDENTIALS_JSON": '{"type": "service_account"}',
            }
        )

    client_class.from_service_account_info.assert_called_once_with({"type": "service_account"})


@pytest.mark.parametrize("flag, expected", [("false", False), ("0", False), ("true", True), (True, True)])
def test_build_gateway_parses_public_read_flag(flag, expected):
    with patch("backend.storage.storage.Client"):
        gateway = build_storage_gateway({"GCS_BUCKET_NAME": BUCKET_NAME, "GCS_PUBLIC_READ": flag})

    assert gateway.public_read is expected
