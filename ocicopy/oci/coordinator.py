import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from ocicopy.oci.blob import BlobResult, BlobStatus, TransferTask, migrate_blob
from ocicopy.oci.client import RegistryClient
from ocicopy.oci.descriptor import Descriptor
from ocicopy.oci.errors import CopyError
from ocicopy.oci.pipe import DEFAULT_MAX_CHUNKS

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass(slots=True)
class MigrationOutcome:
    """Result of migrating all blobs of one image"""

    results: list[BlobResult] = field(default_factory=list)
    error: CopyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def transferred(self) -> int:
        """Total bytes uploaded to the destination"""
        return sum(result.transferred for result in self.results)

    def count(self, status: BlobStatus) -> int:
        return sum(1 for result in self.results if result.status == status)

    def raise_for_error(self):
        if self.error is not None:
            raise self.error


class _FirstError:
    """Holds the first error reported by any worker"""

    def __init__(self):
        self._lock = threading.Lock()
        self.failed = threading.Event()
        self.error: CopyError | None = None

    def claim(self, error: CopyError) -> bool:
        with self._lock:
            if self.error is not None:
                return False
            self.error = error
            self.failed.set()
            return True


def _unique(descriptors: list[Descriptor]) -> list[Descriptor]:
    seen = set()
    result = []
    for descriptor in descriptors:
        if descriptor.digest not in seen:
            seen.add(descriptor.digest)
            result.append(descriptor)
    return result


def migrate_blobs(
    config: Descriptor,
    layers: list[Descriptor],
    source_name: str,
    destination_name: str,
    source: RegistryClient,
    destination: RegistryClient,
    max_workers: int = DEFAULT_MAX_WORKERS,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> MigrationOutcome:
    """Migrate the config blob and all layers concurrently

    Returns once every blob migration has finished. After the first failure
    blobs that have not started yet are skipped, running ones are left to
    finish. The first failure is the outcome's error.
    """
    tasks = [
        TransferTask(
            source=source_name, destination=destination_name, descriptor=descriptor
        )
        for descriptor in _unique([config, *layers])
    ]
    first_error = _FirstError()

    def run(task: TransferTask) -> BlobResult:
        if first_error.failed.is_set():
            logger.debug("Skipping blob %s after an earlier failure", task.digest)
            return BlobResult(task=task, status=BlobStatus.SKIPPED)
        try:
            return migrate_blob(task, source, destination, max_chunks)
        except CopyError as e:
            if first_error.claim(e):
                logger.error("Migrating blob %s failed: %s", task.digest, e)
            else:
                logger.error("Migrating blob %s also failed: %s", task.digest, e)
            return BlobResult(task=task, status=BlobStatus.FAILED, error=e)

    with ThreadPoolExecutor(
        max_workers=max_workers, thread_name_prefix="blob-migrate"
    ) as executor:
        # map() waits for every task, in submission order
        results = list(executor.map(run, tasks))

    return MigrationOutcome(results=results, error=first_error.error)
