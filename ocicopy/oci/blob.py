import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from ocicopy.oci.client import RegistryClient
from ocicopy.oci.descriptor import Descriptor
from ocicopy.oci.errors import CopyError, VerificationFailed
from ocicopy.oci.pipe import DEFAULT_MAX_CHUNKS, transfer

logger = logging.getLogger(__name__)


class BlobStatus(str, Enum):
    PRESENT = "present"
    TRANSFERRED = "transferred"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class TransferTask:
    """Ensure `descriptor` exists in `destination`, copied from `source`"""

    source: str
    destination: str
    descriptor: Descriptor

    @property
    def digest(self) -> str:
        return self.descriptor.digest


@dataclass(slots=True)
class BlobResult:
    task: TransferTask
    status: BlobStatus
    transferred: int = 0
    error: CopyError | None = None


@contextmanager
def _phase(phase: str, repository: str, digest: str):
    try:
        yield
    except CopyError as e:
        raise e.with_context(repository=repository, digest=digest, phase=phase)
    except Exception as e:
        raise CopyError(
            f"{type(e).__name__}: {e}",
            repository=repository,
            digest=digest,
            phase=phase,
        ) from e


def blob_exists(client: RegistryClient, name: str, digest: str) -> bool:
    """Return whether repository `name` holds blob `digest`

    Raises StoreUnavailable when the registry cannot answer.
    """
    exists = client.has_blob(name=name, digest=digest)
    logger.debug("%s in %s: %s", digest, name, "present" if exists else "absent")
    return exists


def migrate_blob(
    task: TransferTask,
    source: RegistryClient,
    destination: RegistryClient,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> BlobResult:
    """Copy one blob unless the destination already has it

    The destination is checked before the transfer and again after it;
    a blob that is still missing after a successful upload raises
    VerificationFailed. Errors are raised with digest, repository and phase.
    """
    digest = task.digest

    with _phase("check", task.destination, digest):
        if blob_exists(destination, task.destination, digest):
            logger.info("Blob %s already exists in %s", digest, task.destination)
            return BlobResult(task=task, status=BlobStatus.PRESENT)

    logger.info(
        "Transferring blob %s (%s bytes) from %s to %s",
        digest,
        task.descriptor.size,
        task.source,
        task.destination,
    )
    with _phase("transfer", task.destination, digest):
        transferred = transfer(
            source=source.pull_blob(name=task.source, digest=digest),
            sink=lambda data: destination.push_blob(
                name=task.destination,
                digest=digest,
                data=data,
                size=task.descriptor.size or None,
            ),
            max_chunks=max_chunks,
        )

    with _phase("verify", task.destination, digest):
        if not blob_exists(destination, task.destination, digest):
            raise VerificationFailed(
                f"Blob missing from destination after uploading {transferred} bytes"
            )

    logger.info("Blob %s copied to %s", digest, task.destination)
    return BlobResult(task=task, status=BlobStatus.TRANSFERRED, transferred=transferred)
