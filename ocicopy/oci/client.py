from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from typing import Protocol

import httpx

from ocicopy.oci.config import RegistryConfig
from ocicopy.oci.errors import (
    AuthenticationError,
    DigestMismatch,
    NotFound,
    Rejected,
    StoreUnavailable,
)
from ocicopy.oci.manifest import INDEX_MEDIA_TYPES, MANIFEST_MEDIA_TYPES, Manifest

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
PAGE_SIZE = 100

# Upload error codes meaning the content does not match the declared digest
# ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#error-codes
CONTENT_ERRORS = {"DIGEST_INVALID", "SIZE_INVALID"}


class RegistryClient(Protocol):
    """The registry operations needed to copy an image."""

    def has_blob(self, name: str, digest: str) -> bool:
        ...

    def pull_blob(self, name: str, digest: str) -> Iterator[bytes]:
        ...

    def push_blob(
        self, name: str, digest: str, data: Iterable[bytes], size: int | None = None
    ) -> None:
        ...

    def pull_manifest(self, name: str, reference: str) -> Manifest:
        ...

    def push_manifest(
        self, name: str, manifest: Manifest, reference: str | None = None
    ) -> None:
        ...


class RegistryCatalog(RegistryClient, Protocol):
    """A registry that can also list its repositories and tags."""

    def catalog(self) -> list[str]:
        ...

    def tags(self, name: str) -> list[str]:
        ...


def _parse_www_auth(www_authenticate: str) -> tuple[str, dict[str, str]]:
    """Parse the WWW-Authenticate header into its scheme and parameters"""
    scheme, _, params = www_authenticate.strip().partition(" ")
    return scheme.lower(), dict(re.findall(r'(\w+)="([^"]*)"', params))


def _error_codes(response: httpx.Response) -> set[str]:
    """Return the OCI error codes from an error response, if any"""
    if "application/json" not in response.headers.get("Content-Type", ""):
        return set()
    try:
        return {error["code"] for error in response.json().get("errors", [])}
    except (ValueError, KeyError, TypeError, AttributeError):
        return set()


class BearerAuth:
    """Attaches HTTP Bearer Authentication to the given Request object."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


class Client:
    """Client for the OCI registry API."""

    def __init__(
        self,
        config: RegistryConfig,
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config
        self.registry_url = config.registry_url
        self._transport = transport
        self._session = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"Client({self.registry_url!r})"

    @property
    def session(self) -> httpx.Client:
        if self._session is None:
            self._session = httpx.Client(
                follow_redirects=True,
                max_redirects=2,
                timeout=self.config.timeout,
                verify=not self.config.insecure,
                transport=self._transport,
            )
            self.try_authentication()
        return self._session

    def _url(self, uri: str) -> str:
        if uri.startswith(("http://", "https://")):
            # Absolute location, use as is
            return uri
        return f"{self.registry_url}{uri}"

    def request(self, method: str, uri: str, stream: bool = False, **kwargs):
        """Send a request, authenticating once when challenged"""
        session = self.session
        retry = not isinstance(kwargs.get("content"), Iterator)
        try:
            response = session.send(
                session.build_request(method, self._url(uri), **kwargs), stream=stream
            )
            if response.status_code == 401 and retry:
                response.close()
                logger.debug("%s %s challenged, authenticating", method, uri)
                self._handle_challenge(response)
                response = session.send(
                    session.build_request(method, self._url(uri), **kwargs),
                    stream=stream,
                )
        except httpx.TransportError as e:
            raise StoreUnavailable(
                f"{method} {self._url(uri)} failed: {e!r}"
            ) from e
        if response.status_code in (401, 403):
            response.close()
            raise AuthenticationError(
                f"{method} {self._url(uri)} was refused "
                f"with HTTP {response.status_code}"
            )
        return response

    def head(self, uri, **kwargs):
        return self.request("HEAD", uri, **kwargs)

    def get(self, uri, **kwargs):
        return self.request("GET", uri, **kwargs)

    def post(self, uri, **kwargs):
        return self.request("POST", uri, **kwargs)

    def put(self, uri, **kwargs):
        return self.request("PUT", uri, **kwargs)

    def close(self):
        if self._session is not None:
            self._session.close()
            self._session = None

    def try_authentication(self):
        """Check the API version endpoint, authenticate when asked to

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#determining-support
        """
        try:
            result = self._session.get(self._url("/v2/"))
        except httpx.TransportError as e:
            raise StoreUnavailable(
                f"Failed to reach registry {self.registry_url}: {e!r}"
            ) from e
        if result.status_code == 401:
            self._handle_challenge(result)
        elif not result.is_success:
            raise StoreUnavailable(
                f"Registry {self.registry_url} answered HTTP {result.status_code}"
            )

    def _handle_challenge(self, response: httpx.Response):
        scheme, params = _parse_www_auth(response.headers.get("WWW-Authenticate", ""))
        logger.debug("Authentication challenge: %s %s", scheme, params)
        if scheme == "bearer" and "realm" in params:
            self.authenticate(
                token_url=params["realm"],
                service=params.get("service"),
                scope=params.get("scope"),
            )
        elif scheme == "basic":
            if not self.password:
                raise AuthenticationError(
                    f"{self.registry_url} requires authentication, "
                    f"provide a username and/or password."
                )
            self._session.auth = (self.username or "", self.password)
        else:
            raise AuthenticationError(
                f"{self.registry_url} sent an unsupported challenge: {scheme!r}"
            )

    @property
    def username(self):
        return self.config.username

    @property
    def password(self):
        return self.config.password

    def authenticate(self, token_url, service, scope):
        """Use the token api to get a token, with basic authentication if we can

        ref: https://distribution.github.io/distribution/spec/auth/token/
        """
        params = {"service": service, "scope": scope}
        auth = None
        if self.password:
            params["client_id"] = self.username
            auth = (self.username or "", self.password)
        try:
            response = self._session.get(
                token_url,
                params={key: value for key, value in params.items() if value},
                auth=auth,
            )
        except httpx.TransportError as e:
            raise StoreUnavailable(f"Failed to reach {token_url}: {e!r}") from e
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{self.registry_url} refused the credentials for {scope or service}"
            )
        if not response.is_success:
            raise StoreUnavailable(
                f"Token endpoint {token_url} answered HTTP {response.status_code}"
            )
        body = response.json()
        self._session.auth = BearerAuth(body.get("token") or body["access_token"])

    def _paginate(self, uri: str, key: str, name: str | None = None) -> list[str]:
        """Collect `key` from a paginated listing

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#listing-tags
        """
        items = []
        params = {"n": PAGE_SIZE}
        while uri:
            response = self.get(uri, params=params)
            if response.status_code == 404:
                raise NotFound(f"{uri} does not exist", repository=name)
            if not response.is_success:
                raise StoreUnavailable(
                    f"Listing {uri} failed with HTTP {response.status_code}",
                    repository=name,
                )
            items.extend(response.json().get(key) or [])
            uri = response.links.get("next", {}).get("url")
            # The next link carries its own query
            params = None
        return items

    def catalog(self) -> list[str]:
        """List the repositories in this registry"""
        return self._paginate("/v2/_catalog", "repositories")

    def tags(self, name: str) -> list[str]:
        """List the tags of repository `name`"""
        return self._paginate(f"/v2/{name}/tags/list", "tags", name=name)

    def has_blob(self, name: str, digest: str) -> bool:
        response = self.head(f"/v2/{name}/blobs/{digest}")
        if response.status_code == 404:
            return False
        if not response.is_success:
            raise StoreUnavailable(
                f"Blob existence check failed with HTTP {response.status_code}",
                repository=name,
                digest=digest,
            )
        return True

    def pull_blob(
        self, name: str, digest: str, chunk_size: int = CHUNK_SIZE
    ) -> Iterator[bytes]:
        """Stream blob `digest` of repository `name`

        Nothing is requested until the first chunk is asked for.
        """
        response = self.get(f"/v2/{name}/blobs/{digest}", stream=True)
        try:
            if response.status_code == 404:
                raise NotFound("Blob not found", repository=name, digest=digest)
            if not response.is_success:
                raise StoreUnavailable(
                    f"Blob download failed with HTTP {response.status_code}",
                    repository=name,
                    digest=digest,
                )
            try:
                yield from response.iter_bytes(chunk_size)
            except httpx.TransportError as e:
                raise StoreUnavailable(
                    f"Blob download interrupted: {e!r}", repository=name, digest=digest
                ) from e
        finally:
            response.close()

    def push_blob(
        self, name: str, digest: str, data: Iterable[bytes], size: int | None = None
    ):
        """Push a blob for repository `name` as a single streamed upload

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-blobs
        """
        # Push the blob using the POST then PUT method
        response = self.post(
            f"/v2/{name}/blobs/uploads/",
            headers={"content-length": "0"},
        )
        if response.status_code != 202:
            raise StoreUnavailable(
                f"Opening an upload failed with HTTP {response.status_code}",
                repository=name,
                digest=digest,
            )
        location = self._url(response.headers["location"])
        # The location query carries the upload session state, keep it
        upload_url = httpx.URL(location).copy_merge_params({"digest": digest})

        headers = {"content-type": "application/octet-stream"}
        if size is not None:
            headers["content-length"] = str(size)
        try:
            response = self.put(str(upload_url), content=iter(data), headers=headers)
        except Exception:
            self._cancel_upload(location)
            raise
        if response.is_success:
            return
        codes = _error_codes(response)
        logger.debug("Upload of %s failed: %s %s", digest, response.status_code, codes)
        if codes & CONTENT_ERRORS:
            raise DigestMismatch(
                f"Destination rejected the content: {', '.join(sorted(codes))}",
                repository=name,
                digest=digest,
            )
        raise StoreUnavailable(
            f"Blob upload failed with HTTP {response.status_code}",
            repository=name,
            digest=digest,
        )

    def _cancel_upload(self, location: str):
        """Release an upload session, the registry expires it otherwise

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#canceling-an-upload
        """
        try:
            response = self.request("DELETE", location)
        except StoreUnavailable as e:
            logger.debug("Cancelling upload %s failed: %s", location, e)
            return
        logger.debug("Cancelled upload %s: HTTP %s", location, response.status_code)

    def pull_manifest(self, name: str, reference: str) -> Manifest:
        uri = f"/v2/{name}/manifests/{reference}"
        # Ask for lists too so they can be reported as such
        result = self.get(
            uri,
            headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES)},
        )
        if result.status_code == 404:
            raise NotFound(f"Manifest {name}:{reference} not found", repository=name)
        if not result.is_success:
            raise StoreUnavailable(
                f"Manifest download failed with HTTP {result.status_code}",
                repository=name,
            )
        media_type = result.headers.get("Content-Type", "").split(";")[0].strip()
        return Manifest.from_bytes(result.content, media_type=media_type or None)

    def push_manifest(
        self, name: str, manifest: Manifest, reference: str | None = None
    ):
        """Push a manifest for repository `name` and tag `reference`

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-manifests
        """
        descriptor = manifest.descriptor
        if reference is None:
            reference = descriptor.digest
            response = self.head(f"/v2/{name}/manifests/{reference}")
            if response.status_code == 200:
                logger.info("Manifest already exists: %s@%s", name, reference)
                return

        uri = f"/v2/{name}/manifests/{reference}"
        logger.debug("Pushing manifest %s to %s:%s", descriptor.digest, name, reference)
        response = self.put(
            uri,
            content=manifest.content,
            headers={"content-type": manifest.mediaType},
        )
        if response.is_success:
            return
        codes = _error_codes(response)
        if 400 <= response.status_code < 500:
            raise Rejected(
                f"Destination refused the manifest with HTTP {response.status_code}"
                + (f": {', '.join(sorted(codes))}" if codes else ""),
                repository=name,
                digest=descriptor.digest,
            )
        raise StoreUnavailable(
            f"Manifest upload failed with HTTP {response.status_code}",
            repository=name,
            digest=descriptor.digest,
        )
