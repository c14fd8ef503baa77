from pydantic import BaseModel, ConfigDict


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    digest: str
    size: int
    mediaType: str
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None
