import threading
from collections import Counter
from hashlib import sha256

import pytest

from ocicopy.oci.descriptor import Descriptor
from ocicopy.oci.errors import DigestMismatch, NotFound, Rejected, StoreUnavailable
from ocicopy.oci.manifest import DOCKER_MANIFEST, Manifest

LAYER_TYPE = "application/vnd.docker.image.rootfs.diff.tar.gzip"
CONFIG_TYPE = "application/vnd.docker.container.image.v1+json"


def digest_of(content: bytes) -> str:
    return f"sha256:{sha256(content).hexdigest()}"


def descriptor(digest: str, content: bytes = b"", media_type: str = LAYER_TYPE):
    return Descriptor(digest=digest, size=len(content), mediaType=media_type)


def make_manifest(config: Descriptor, layers: list[Descriptor], **kwargs) -> Manifest:
    fields = {"mediaType": DOCKER_MANIFEST} | kwargs
    return Manifest(config=config, layers=layers, **fields)


class FakeRegistry:
    """In-memory registry implementing the RegistryClient protocol

    Blobs live in `blobs` keyed by (repository, digest). The `fail_*`
    attributes inject failures per digest.
    """

    def __init__(self, chunk_size: int = 4, verify_digests: bool = False):
        self.chunk_size = chunk_size
        self.verify_digests = verify_digests
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.manifests: dict[tuple[str, str], Manifest] = {}
        self.calls = Counter()
        self.pushed: list[str] = []
        self.published_with_missing_blobs = False
        # digest -> exception raised by has_blob
        self.fail_exists: dict[str, Exception] = {}
        # digest -> number of bytes emitted before the download fails
        self.fail_pull_after: dict[str, int] = {}
        # digest -> exception raised by push_blob after reading the data
        self.fail_push: dict[str, Exception] = {}
        # digests whose upload is accepted but silently dropped
        self.drop_uploads: set[str] = set()
        self.reject_manifests = False
        self._lock = threading.Lock()

    def _count(self, name: str):
        with self._lock:
            self.calls[name] += 1

    def add_blob(self, name: str, content: bytes, digest: str | None = None) -> str:
        digest = digest or digest_of(content)
        self.blobs[(name, digest)] = content
        return digest

    def digests(self, name: str) -> set[str]:
        return {digest for repo, digest in self.blobs if repo == name}

    def has_blob(self, name: str, digest: str) -> bool:
        self._count("has_blob")
        if digest in self.fail_exists:
            raise self.fail_exists[digest]
        return (name, digest) in self.blobs

    def pull_blob(self, name: str, digest: str):
        self._count("pull_blob")
        if (name, digest) not in self.blobs:
            raise NotFound("Blob not found", repository=name, digest=digest)
        content = self.blobs[(name, digest)]
        fail_after = self.fail_pull_after.get(digest)
        for start in range(0, len(content), self.chunk_size):
            if fail_after is not None and start >= fail_after:
                raise StoreUnavailable(
                    "Connection reset", repository=name, digest=digest
                )
            yield content[start : start + self.chunk_size]

    def push_blob(self, name: str, digest: str, data, size=None):
        self._count("push_blob")
        content = b"".join(data)
        if digest in self.fail_push:
            raise self.fail_push[digest]
        if self.verify_digests and digest_of(content) != digest:
            raise DigestMismatch("DIGEST_INVALID", repository=name, digest=digest)
        with self._lock:
            self.pushed.append(digest)
            if digest not in self.drop_uploads:
                self.blobs[(name, digest)] = content

    def pull_manifest(self, name: str, reference: str) -> Manifest:
        self._count("pull_manifest")
        try:
            return self.manifests[(name, reference)]
        except KeyError:
            raise NotFound(f"Manifest {name}:{reference} not found", repository=name)

    def push_manifest(self, name: str, manifest: Manifest, reference=None):
        self._count("push_manifest")
        if self.reject_manifests:
            raise Rejected("MANIFEST_INVALID", repository=name)
        if any((name, blob.digest) not in self.blobs for blob in manifest.blobs):
            self.published_with_missing_blobs = True
        self.manifests[(name, reference or manifest.descriptor.digest)] = manifest


@pytest.fixture
def source() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def destination() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def image(source):
    """An image `library/app:1.0` with a config blob and three layers"""
    config = descriptor(
        source.add_blob("library/app", b'{"architecture": "amd64"}'),
        b'{"architecture": "amd64"}',
        CONFIG_TYPE,
    )
    layers = []
    for content in (b"first layer bytes", b"second layer", b"third and final layer"):
        layers.append(descriptor(source.add_blob("library/app", content), content))
    manifest = make_manifest(config, layers)
    source.manifests[("library/app", "1.0")] = manifest
    return manifest
