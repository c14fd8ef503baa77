"""Registry credentials from the Docker CLI configuration

ref: https://docs.docker.com/reference/cli/docker/#docker-cli-configuration-file-configjson-properties
"""
import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Docker Hub credentials are stored under the v1 index URL
DOCKER_HUB_KEYS = ("https://index.docker.io/v1/", "index.docker.io", "docker.io")
DOCKER_HUB_HOSTS = {"docker.io", "index.docker.io", "registry-1.docker.io"}


@dataclass(frozen=True, slots=True)
class Credentials:
    username: str | None
    password: str | None

    def __repr__(self):
        return f"Credentials(username={self.username!r})"


def config_path() -> Path:
    directory = os.environ.get("DOCKER_CONFIG")
    if directory:
        return Path(directory) / "config.json"
    return Path.home() / ".docker" / "config.json"


def _host(value: str) -> str:
    """Strip scheme and path from a registry address"""
    parts = urlparse(value if "://" in value else f"//{value}")
    return parts.netloc or value


def _decode(entry: dict) -> Credentials | None:
    if entry.get("auth"):
        try:
            decoded = base64.b64decode(entry["auth"]).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        username, _, password = decoded.partition(":")
        return Credentials(username=username, password=password)
    if entry.get("username") or entry.get("password"):
        return Credentials(
            username=entry.get("username"), password=entry.get("password")
        )
    if entry.get("identitytoken"):
        return Credentials(username="<token>", password=entry["identitytoken"])
    return None


def load_auths(path: Path | None = None) -> dict[str, Credentials]:
    """Read the credentials from a Docker config.json, keyed by registry host

    A missing or unreadable file results in no credentials.
    """
    path = path or config_path()
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        logger.debug("No docker config at %s", path)
        return {}
    except (OSError, ValueError) as e:
        logger.debug("Could not read docker config %s: %s", path, e)
        return {}

    auths = {}
    for key, entry in (data.get("auths") or {}).items():
        credentials = _decode(entry or {})
        if credentials is None:
            continue
        host = _host(key)
        if key in DOCKER_HUB_KEYS or host in DOCKER_HUB_HOSTS:
            for alias in DOCKER_HUB_HOSTS:
                auths.setdefault(alias, credentials)
        else:
            auths[host] = credentials
    return auths


def resolve_credentials(
    url: str,
    username: str | None = None,
    password: str | None = None,
    auths: dict[str, Credentials] | None = None,
) -> Credentials:
    """Return the credentials for registry `url`, explicit values win"""
    if password:
        return Credentials(username=username, password=password)
    stored = (auths or {}).get(_host(url))
    if stored is None:
        return Credentials(username=username, password=password)
    logger.debug("Using stored credentials for %s", _host(url))
    return Credentials(
        username=username or stored.username,
        password=stored.password,
    )
