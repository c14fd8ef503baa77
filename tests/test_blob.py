import pytest
from conftest import FakeRegistry, descriptor, digest_of

from ocicopy.oci.blob import BlobStatus, TransferTask, blob_exists, migrate_blob
from ocicopy.oci.errors import (
    CopyError,
    DigestMismatch,
    NotFound,
    StoreUnavailable,
    VerificationFailed,
)

CONTENT = b"layer content that spans several chunks"


@pytest.fixture
def task(source):
    digest = source.add_blob("src/app", CONTENT)
    return TransferTask(
        source="src/app", destination="dst/app", descriptor=descriptor(digest, CONTENT)
    )


def test_blob_exists(destination):
    digest = destination.add_blob("dst/app", b"abc")
    assert blob_exists(destination, "dst/app", digest)
    assert not blob_exists(destination, "dst/app", digest_of(b"other"))
    assert not blob_exists(destination, "other/app", digest)


def test_blob_exists_unavailable(destination):
    destination.fail_exists["sha256:aaa"] = StoreUnavailable("timed out")
    with pytest.raises(StoreUnavailable):
        blob_exists(destination, "dst/app", "sha256:aaa")


def test_migrate_transfers_missing_blob(task, source, destination):
    result = migrate_blob(task, source, destination)

    assert result.status == BlobStatus.TRANSFERRED
    assert result.transferred == len(CONTENT)
    assert destination.blobs[("dst/app", task.digest)] == CONTENT
    # Checked before and after the upload
    assert destination.calls["has_blob"] == 2


def test_migrate_skips_present_blob(task, source, destination):
    destination.add_blob("dst/app", CONTENT)

    result = migrate_blob(task, source, destination)

    assert result.status == BlobStatus.PRESENT
    assert result.transferred == 0
    assert source.calls["pull_blob"] == 0
    assert destination.calls["push_blob"] == 0


def test_migrate_verification_failed(task, source, destination):
    destination.drop_uploads.add(task.digest)

    with pytest.raises(VerificationFailed) as info:
        migrate_blob(task, source, destination)

    assert info.value.digest == task.digest
    assert info.value.repository == "dst/app"
    assert info.value.phase == "verify"
    # Reported, not retried
    assert destination.calls["push_blob"] == 1


def test_migrate_digest_mismatch(source):
    destination = FakeRegistry(verify_digests=True)
    source.add_blob("src/app", CONTENT, digest="sha256:bbb")
    task = TransferTask("src/app", "dst/app", descriptor("sha256:bbb", CONTENT))

    with pytest.raises(DigestMismatch) as info:
        migrate_blob(task, source, destination)

    assert info.value.phase == "transfer"
    assert ("dst/app", "sha256:bbb") not in destination.blobs


def test_migrate_source_missing(source, destination):
    task = TransferTask("src/app", "dst/app", descriptor("sha256:ccc"))

    with pytest.raises(NotFound) as info:
        migrate_blob(task, source, destination)

    assert info.value.repository == "src/app"
    assert info.value.phase == "transfer"
    assert not destination.blobs


def test_migrate_interrupted_download_stores_nothing(task, source, destination):
    source.fail_pull_after[task.digest] = 8

    with pytest.raises(StoreUnavailable, match="Connection reset"):
        migrate_blob(task, source, destination)

    assert ("dst/app", task.digest) not in destination.blobs


def test_migrate_check_failure(task, source, destination):
    destination.fail_exists[task.digest] = StoreUnavailable("401 Unauthorized")

    with pytest.raises(StoreUnavailable) as info:
        migrate_blob(task, source, destination)

    assert info.value.phase == "check"
    assert source.calls["pull_blob"] == 0


def test_migrate_wraps_unexpected_errors(task, source, destination):
    destination.fail_push[task.digest] = OSError("disk full")

    with pytest.raises(CopyError, match="OSError: disk full") as info:
        migrate_blob(task, source, destination)

    assert info.value.digest == task.digest
    assert isinstance(info.value.__cause__, OSError)
