from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse

DOCKER_HUB = "registry-1.docker.io"
DEFAULT_TIMEOUT = 60.0


@dataclass(frozen=True, slots=True)
class RegistryConfig:
    """Connection settings for one registry endpoint

    :param url: Registry URL, the scheme defaults to https (http when insecure).
    :param username: Username for the registry, if any.
    :param password: Password or token for the registry, if any.
    :param insecure: Allow plain http and skip TLS verification.
    :param timeout: Network timeout in seconds, None to wait forever.
    """

    url: str
    username: str | None = None
    password: str | None = None
    insecure: bool = False
    timeout: float | None = DEFAULT_TIMEOUT

    @property
    def registry_url(self) -> str:
        """The registry URL with scheme, without trailing slash"""
        parts = urlparse(self.url if "://" in self.url else f"//{self.url}")
        if not parts.scheme:
            parts = parts._replace(scheme="http" if self.insecure else "https")
        if parts.netloc == "docker.io":
            parts = parts._replace(netloc=DOCKER_HUB)
        return urlunparse(parts).rstrip("/")

    def __repr__(self):
        # Keep the password out of logs and tracebacks
        return (
            f"RegistryConfig(url={self.url!r}, username={self.username!r}, "
            f"insecure={self.insecure!r}, timeout={self.timeout!r})"
        )
