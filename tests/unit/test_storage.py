from __future__ import annotations

from io import BytesIO
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from auditflow.core import storage
from auditflow.core.exceptions import SourceMissing, StorageError, StorageScopeError


def test_organization_key_is_scoped_and_sanitized() -> None:
    key = storage.organization_key(7, storage.UPLOAD_AREA, "../../etc/pass wd.csv")

    assert key.startswith("org-7/imports/")
    assert key.endswith("-etc_pass_wd.csv")
    assert storage.ensure_scoped(7, key) == key


@pytest.mark.parametrize(
    "key",
    ["org-8/imports/file.csv", "org-7/../org-8/file.csv", "", "imports/file.csv"],
)
def test_ensure_scoped_rejects_foreign_keys(key: str) -> None:
    with pytest.raises(StorageScopeError):
        storage.ensure_scoped(7, key)


def test_local_storage_round_trip(tmp_path: Path) -> None:
    backend = storage.LocalFileStorage(tmp_path)

    stored = backend.put("org-1/exports/report.csv", b"a,b\n1,2\n")

    assert stored.size == 8
    assert stored.content_type == "text/csv"
    assert backend.exists("org-1/exports/report.csv")
    assert backend.read("org-1/exports/report.csv") == b"a,b\n1,2\n"
    assert backend.delete("org-1/exports/report.csv") is True
    assert backend.delete("org-1/exports/report.csv") is False
    with pytest.raises(SourceMissing):
        backend.open("org-1/exports/report.csv")


def test_local_storage_refuses_to_escape_root(tmp_path: Path) -> None:
    backend = storage.LocalFileStorage(tmp_path / "root")

    with pytest.raises(StorageScopeError):
        backend.put("../outside.csv", b"x")


def test_build_storage_uses_local_backend_for_local_bucket(tmp_path: Path) -> None:
    settings = SimpleNamespace(aws_s3_bucket="local", local_storage_path=str(tmp_path))

    assert isinstance(storage.build_storage(settings), storage.LocalFileStorage)


def test_s3_client_uses_sigv4(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}
    settings = SimpleNamespace(
        aws_region="us-east-1",
        aws_s3_bucket="auditflow-files",
        aws_access_key_id="test",
        aws_secret_access_key="secret",
        local_storage_path="/tmp/auditflow",
    )

    def fake_boto3_client(service_name: str, **kwargs: object) -> Mock:
        captured.update(kwargs)
        return Mock()

    monkeypatch.setattr(storage.boto3, "client", fake_boto3_client)

    backend = storage.build_storage(settings)

    assert isinstance(backend, storage.S3FileStorage)
    assert getattr(captured["config"], "signature_version", None) == "s3v4"
    assert captured["aws_access_key_id"] == "test"


def test_s3_put_uploads_with_content_type() -> None:
    client = Mock()
    backend = storage.S3FileStorage("bucket", client)

    stored = backend.put("org-1/exports/data.json", b"{}")

    kwargs = client.upload_fileobj.call_args.kwargs
    assert kwargs["Bucket"] == "bucket"
    assert kwargs["Key"] == "org-1/exports/data.json"
    assert kwargs["ExtraArgs"] == {"ContentType": "application/json"}
    assert stored.size == 2


def test_s3_open_missing_key_raises_source_missing() -> None:
    client = Mock()
    client.get_object.side_effect = ClientError(
        {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
    )
    backend = storage.S3FileStorage("bucket", client)

    with pytest.raises(SourceMissing):
        backend.open("org-1/imports/gone.csv")


def test_s3_failures_are_transient_storage_errors() -> None:
    client = Mock()
    client.get_object.side_effect = ClientError(
        {"Error": {"Code": "SlowDown", "Message": "throttled"}}, "GetObject"
    )
    backend = storage.S3FileStorage("bucket", client)

    with pytest.raises(StorageError):
        backend.read("org-1/imports/file.csv")


def test_s3_read_returns_body() -> None:
    client = Mock()
    client.get_object.return_value = {"Body": BytesIO(b"payload")}
    backend = storage.S3FileStorage("bucket", client)

    assert backend.read("org-1/imports/file.csv") == b"payload"


def test_local_delete_failure_is_storage_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    backend = storage.LocalFileStorage(tmp_path)
    backend.put("org-1/exports/report.csv", b"a,b\n")

    def refuse(self: Path, missing_ok: bool = False) -> None:
        raise PermissionError("read-only file system")

    monkeypatch.setattr(Path, "unlink", refuse)

    with pytest.raises(StorageError):
        backend.delete("org-1/exports/report.csv")


def test_s3_exists_only_treats_not_found_as_missing() -> None:
    client = Mock()
    client.head_object.side_effect = ClientError(
        {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
    )
    backend = storage.S3FileStorage("bucket", client)

    assert backend.exists("org-1/exports/gone.csv") is False

    client.head_object.side_effect = ClientError(
        {"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadObject"
    )
    with pytest.raises(StorageError):
        backend.exists("org-1/exports/locked.csv")
    client.delete_object.assert_not_called()
