"""
Platform-wide exception hierarchy.

Services raise these types; blueprint error handlers registered once in
``civiclens.utils.errors`` translate them to HTTP responses, so every
endpoint reports failures the same way.

Usage:
    from civiclens.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Issue", resource_id=issue_id)
    raise ValidationError("title is required", details={"title": "required"})
"""


class CivicLensError(Exception):
    """Base class for every expected, caller-reportable failure."""


class NotFoundError(CivicLensError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Issue").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(CivicLensError):
    """Raised when a request is missing required fields or carries malformed values.

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AuthorizationError(CivicLensError):
    """Raised when the caller is unauthenticated or lacks the required role.

    ``authenticated`` distinguishes 401 (no identity) from 403 (wrong role).
    Raised before any persistence so there are never side effects.
    """

    def __init__(self, message: str, *, authenticated: bool = True) -> None:
        self.authenticated = authenticated
        super().__init__(message)


class InvalidTransition(CivicLensError):
    """Raised when a status change is not reachable from the issue's current status.

    Also raised when a concurrent writer changed the status between read and
    write (the compare-and-swap guard found no matching row).
    """

    def __init__(self, issue_id: str, current: str | None, target: str, reason: str | None = None):
        msg = f"Cannot move issue {issue_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.issue_id = issue_id
        self.current_status = current
        self.target_status = target
        self.reason = reason


class NoBeforeImage(CivicLensError):
    """Raised when a resolution is claimed for an issue without before-evidence."""

    def __init__(self, issue_id: str):
        super().__init__(f"Cannot verify: no before image exists for issue {issue_id}")
        self.issue_id = issue_id


# ── Provenance (anti-fraud) family ───────────────────────────────────────────

class ProvenanceError(CivicLensError):
    """Base for image-provenance rejections. ``code`` is machine-readable."""

    code = "ERR_PROVENANCE"
    default_reason = "Image provenance could not be verified."

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class UnreadableImage(ProvenanceError):
    code = "ERR_PROVENANCE_UNREADABLE"
    default_reason = "Failed to read image metadata. Ensure you are uploading an original photo."


class MissingMetadata(ProvenanceError):
    code = "ERR_PROVENANCE_MISSING_METADATA"
    default_reason = (
        "Image metadata (EXIF) is missing. Please take a fresh photo with location enabled."
    )


class MissingGPS(ProvenanceError):
    code = "ERR_PROVENANCE_MISSING_GPS"
    default_reason = "GPS metadata is missing. Please ensure location is enabled in your camera app."


class MissingTimestamp(ProvenanceError):
    code = "ERR_PROVENANCE_MISSING_TIMESTAMP"
    default_reason = "Timestamp metadata is missing from the image."


class StaleImage(ProvenanceError):
    code = "ERR_PROVENANCE_STALE"
    default_reason = "This photo is over 24 hours old. Please capture a live photo to report."


class LocationMismatch(ProvenanceError):
    code = "ERR_PROVENANCE_LOCATION_MISMATCH"
    default_reason = "Image location is too far from the reported map pin."


# ── AI oracle ────────────────────────────────────────────────────────────────

class OracleError(Exception):
    """Network, provider or parse failure talking to the AI oracle.

    Never surfaced to callers: each component absorbs it according to its
    own fail-open / fail-closed policy.
    """


class OracleUnavailable(OracleError):
    """No provider is configured for the requested model."""


class ImageFetchError(OracleError):
    """A stored image could not be read back for an oracle comparison.

    Handled exactly like an oracle failure by every component.
    """


# ── Consistency ──────────────────────────────────────────────────────────────

class ConsistencyWarning(Exception):
    """A ledger append failed after the status update it describes was applied.

    Logged, never surfaced and never retried automatically.
    """

    def __init__(self, issue_id: str, detail: str):
        super().__init__(f"Ledger write failed for issue {issue_id}: {detail}")
        self.issue_id = issue_id
        self.detail = detail
