import json
from functools import cached_property
from hashlib import sha256

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ocicopy.oci.descriptor import Descriptor
from ocicopy.oci.errors import InvalidManifest, SchemaUnsupported

SCHEMA_VERSION = 2

DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MANIFEST_MEDIA_TYPES = (DOCKER_MANIFEST, OCI_MANIFEST)

DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
INDEX_MEDIA_TYPES = (DOCKER_MANIFEST_LIST, OCI_INDEX)


class Manifest(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    ref: https://distribution.github.io/distribution/spec/manifest-v2-2/
    """

    model_config = ConfigDict(extra="allow")

    config: Descriptor
    layers: list[Descriptor] = []
    artifactType: str | None = None
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    mediaType: str = OCI_MANIFEST
    schemaVersion: int = SCHEMA_VERSION

    # Raw bytes as received from the registry, re-used when publishing so the
    # manifest digest stays the same.
    data: bytes | None = Field(exclude=True, default=None)

    @cached_property
    def descriptor(self) -> Descriptor:
        data = self.data
        if data is None:
            data = self.model_dump_json(exclude_none=True).encode("utf-8")
        return Descriptor(
            mediaType=self.mediaType,
            digest=f"sha256:{sha256(data).hexdigest()}",
            size=len(data),
        )

    @property
    def content(self) -> bytes:
        """The bytes to publish for this manifest"""
        if self.data is not None:
            return self.data
        return self.model_dump_json(exclude_none=True).encode("utf-8")

    @property
    def blobs(self) -> list[Descriptor]:
        """The config blob followed by the layers, in manifest order"""
        return [self.config, *self.layers]

    @classmethod
    def from_bytes(cls, data: bytes, media_type: str | None = None) -> "Manifest":
        """Parse a manifest as served by a registry

        `media_type` is the Content-Type the registry served the manifest
        with, used when the document itself does not declare one.
        """
        try:
            payload = json.loads(data)
        except ValueError as e:
            raise InvalidManifest(f"Manifest is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise InvalidManifest("Manifest is not a JSON object")

        media_type = payload.get("mediaType") or media_type
        if media_type in INDEX_MEDIA_TYPES or "manifests" in payload:
            raise SchemaUnsupported(
                f"Manifest lists are not supported: {media_type or 'index'}"
            )
        if media_type:
            payload["mediaType"] = media_type

        try:
            return cls.model_validate(payload | {"data": data})
        except ValidationError as e:
            raise InvalidManifest(f"Malformed manifest: {e}") from e

    def check(self):
        """Raise InvalidManifest unless this manifest can be copied"""
        if self.schemaVersion != SCHEMA_VERSION:
            raise InvalidManifest(
                f"Unsupported schemaVersion {self.schemaVersion}, "
                f"expected {SCHEMA_VERSION}"
            )
        if self.mediaType not in MANIFEST_MEDIA_TYPES:
            raise InvalidManifest(f"Unsupported manifest mediaType {self.mediaType}")
        if not self.config.digest:
            raise InvalidManifest("Manifest config has no digest")
        if not self.layers:
            raise InvalidManifest("Manifest has no layers")
