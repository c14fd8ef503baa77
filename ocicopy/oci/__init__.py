"""OCI image copy library for Python

This module copies images between registries through a subset of the OCI
distribution API: blobs are streamed from source to destination, blobs the
destination already has are skipped, and the manifest is published last.
"""
import logging

from ocicopy.oci.blob import (
    BlobResult,
    BlobStatus,
    TransferTask,
    blob_exists,
    migrate_blob,
)
from ocicopy.oci.client import Client, RegistryCatalog, RegistryClient
from ocicopy.oci.config import RegistryConfig
from ocicopy.oci.coordinator import (
    DEFAULT_MAX_WORKERS,
    MigrationOutcome,
    migrate_blobs,
)
from ocicopy.oci.descriptor import Descriptor
from ocicopy.oci.errors import CopyError
from ocicopy.oci.manifest import Manifest

logger = logging.getLogger(__name__)


def fetch_manifest(client: RegistryClient, name: str, reference: str) -> Manifest:
    """Pull the manifest for `name:reference` and make sure it can be copied"""
    try:
        manifest = client.pull_manifest(name=name, reference=reference)
        manifest.check()
    except CopyError as e:
        raise e.with_context(repository=name, phase="fetch")
    logger.debug(
        "Manifest %s:%s has config %s and %d layers",
        name,
        reference,
        manifest.config.digest,
        len(manifest.layers),
    )
    return manifest


def publish_manifest(
    client: RegistryClient, name: str, reference: str, manifest: Manifest
):
    """Publish a copy of `manifest` as `name:reference`"""
    published = manifest.model_copy()
    try:
        client.push_manifest(name=name, manifest=published, reference=reference)
    except CopyError as e:
        raise e.with_context(repository=name, phase="publish")


def copy_image(
    source: RegistryClient,
    destination: RegistryClient,
    source_name: str,
    source_reference: str,
    destination_name: str | None = None,
    destination_reference: str | None = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> MigrationOutcome:
    """Copy one image from `source` to `destination`

    :param source: Client for the registry to copy from.
    :param destination: Client for the registry to copy to.
    :param source_name: Repository in the source registry.
    :param source_reference: Tag or digest in the source registry.
    :param destination_name: Repository in the destination, defaults to `source_name`.
    :param destination_reference: Tag in the destination, defaults to
        `source_reference`.
    :param max_workers: Number of blobs to migrate concurrently.

    The manifest is only published once every blob is in the destination.
    Raises the first error encountered, running it again resumes where it
    failed.
    """
    destination_name = destination_name or source_name
    destination_reference = destination_reference or source_reference

    manifest = fetch_manifest(source, source_name, source_reference)
    logger.info(
        "Copying %s:%s to %s:%s",
        source_name,
        source_reference,
        destination_name,
        destination_reference,
    )

    outcome = migrate_blobs(
        config=manifest.config,
        layers=manifest.layers,
        source_name=source_name,
        destination_name=destination_name,
        source=source,
        destination=destination,
        max_workers=max_workers,
    )
    outcome.raise_for_error()

    publish_manifest(destination, destination_name, destination_reference, manifest)
    logger.info(
        "Copied %s:%s (%d blobs transferred, %d already present, %d bytes)",
        destination_name,
        destination_reference,
        outcome.count(BlobStatus.TRANSFERRED),
        outcome.count(BlobStatus.PRESENT),
        outcome.transferred,
    )
    return outcome


def copy_repositories(
    source: RegistryCatalog,
    destination: RegistryClient,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> list[tuple[str, CopyError]]:
    """Copy every tag of every repository of `source` to `destination`

    A failing image does not stop the others, the failures are returned.
    """
    failures = []
    for name in source.catalog():
        for tag in source.tags(name):
            image = f"{name}:{tag}"
            try:
                copy_image(
                    source=source,
                    destination=destination,
                    source_name=name,
                    source_reference=tag,
                    max_workers=max_workers,
                )
            except CopyError as e:
                logger.error("Copying %s failed: %s", image, e)
                failures.append((image, e))
    return failures


__all__ = [
    "BlobResult",
    "BlobStatus",
    "Client",
    "CopyError",
    "Descriptor",
    "Manifest",
    "MigrationOutcome",
    "RegistryCatalog",
    "RegistryClient",
    "RegistryConfig",
    "TransferTask",
    "blob_exists",
    "copy_image",
    "copy_repositories",
    "fetch_manifest",
    "migrate_blob",
    "migrate_blobs",
    "publish_manifest",
]
