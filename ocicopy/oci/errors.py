"""Errors raised while copying an image between registries.

Every error can carry the repository, blob digest and phase it happened in,
so a failed run can be diagnosed without re-running it.
"""


class CopyError(Exception):
    """Base class for all image copy failures."""

    def __init__(
        self,
        message: str,
        *,
        repository: str | None = None,
        digest: str | None = None,
        phase: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.repository = repository
        self.digest = digest
        self.phase = phase

    def __str__(self):
        context = [
            f"{key}={value}"
            for key, value in (
                ("phase", self.phase),
                ("repository", self.repository),
                ("digest", self.digest),
            )
            if value is not None
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"

    def with_context(self, **context: str | None) -> "CopyError":
        """Fill in missing context, existing values win."""
        for key, value in context.items():
            if getattr(self, key) is None:
                setattr(self, key, value)
        return self


class InvalidManifest(CopyError):
    """The manifest does not describe an image this tool can copy."""


class SchemaUnsupported(CopyError):
    """The manifest is a list/index or another unsupported schema."""


class NotFound(CopyError):
    """The manifest, blob or repository does not exist."""


class StoreUnavailable(CopyError):
    """The registry could not be reached or answered unexpectedly."""


class AuthenticationError(StoreUnavailable):
    """Raised when authentication fails."""


class DigestMismatch(CopyError):
    """The destination rejected the uploaded content for its digest."""


class VerificationFailed(CopyError):
    """The upload reported success but the blob is not in the destination."""


class Rejected(CopyError):
    """The destination refused the manifest."""


class TransferInterrupted(CopyError):
    """The upload stopped reading before the end of the blob."""
