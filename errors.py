from typing import Optional


class LauncherError(Exception):
    """Base exception for the launcher engine."""


class ConfigError(LauncherError):
    """Raised when launcher_config.json is missing or invalid."""


class ManifestError(LauncherError):
    """Raised when a version manifest is malformed, missing or its parent chain is cyclic."""


class ResolutionError(LauncherError):
    """Raised when no usable artifact exists for a required dependency."""


class NetworkError(LauncherError):
    """
    Raised by a fetcher when a transfer fails.

    Transient errors (timeouts, resets, 5xx) are retried by the fetch engine,
    the others (4xx, invalid URL) fail the artifact immediately.
    """

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None, transient: bool = True):
        super().__init__(message)
        self.url = url
        self.status = status
        self.transient = transient


class IntegrityError(LauncherError):
    """Raised when downloaded bytes do not match the declared hash or size."""

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None, algorithm: str = 'sha1'):
        super().__init__(message)
        self.expected = expected
        self.actual = actual
        self.algorithm = algorithm


class CompositionError(LauncherError):
    """Raised when an argument template keeps a placeholder nobody can fill."""

    def __init__(self, message: str, placeholder: Optional[str] = None):
        super().__init__(message)
        self.placeholder = placeholder


class FetchCancelled(LauncherError):
    """Raised (or reported) when the caller cancels artifact fetching."""


class VersionNotFoundError(ManifestError):
    """Raised when a manifest source has no document for a version id."""

    def __init__(self, version_id: str):
        super().__init__(f"Version not found: {version_id}")
        self.version_id = version_id


class JavaInstallError(LauncherError):
    """Raised when a Java runtime cannot be downloaded or located after extraction."""
