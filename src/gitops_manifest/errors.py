# ABOUTME: Exception hierarchy for manifest generation
# ABOUTME: Separates not-found, user-facing API errors, merge failures and allocation races

"""
Exception hierarchy for the manifest pipeline.

=============================================================================
WHY SO MANY EXCEPTION TYPES?
=============================================================================

A deployment trigger touches a database, a variable resolver, a template
engine and one or more Kubernetes API servers. The orchestrator has to react
differently depending on WHAT failed:

    NotFoundError             -> sometimes recoverable (lazy creation of an
                                 environment override, "no strategy")
    ApiError                  -> user-facing, carries an HTTP-like status
    MergeError                -> a values document was not valid JSON
    VariableResolutionError   -> always aborts the trigger
    DuplicateReleaseCounter   -> concurrency repair gave up
    KubernetesError           -> classified into benign / typed / generic

Catching on type (instead of parsing messages) keeps those decisions in one
place and makes them testable.

=============================================================================
HIERARCHY
=============================================================================

    ManifestError
    ├── NotFoundError
    ├── ApiError
    │   └── TemplateRenderError
    ├── MergeError
    ├── PathNotFoundError
    ├── VariableResolutionError
    ├── DuplicateReleaseCounterError
    └── KubernetesError
"""

from __future__ import annotations

from http import HTTPStatus


class ManifestError(Exception):
    """Base class for every error raised by this package."""


class NotFoundError(ManifestError):
    """
    A store lookup found no record.

    Kept distinct from storage or transport failures: a missing environment
    override triggers lazy creation, while any other error aborts the trigger.
    """

    def __init__(self, entity: str, **identifiers: object) -> None:
        self.entity = entity
        self.identifiers = identifiers
        ids = ", ".join(f"{k}={v}" for k, v in identifiers.items())
        super().__init__(f"{entity} not found ({ids})" if ids else f"{entity} not found")


class ApiError(ManifestError):
    """
    User-facing error carrying an HTTP-status-like code.

    The trigger workflow surfaces ``user_message`` to the person who pressed
    "deploy"; ``internal_message`` is for logs.
    """

    def __init__(
        self,
        http_status: int,
        user_message: str,
        internal_message: str | None = None,
    ) -> None:
        self.http_status = http_status
        self.user_message = user_message
        self.internal_message = internal_message or user_message
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"API error ({self.http_status}): {self.user_message}"
        if self.internal_message and self.internal_message != self.user_message:
            base += f" - {self.internal_message}"
        return base

    @classmethod
    def precondition_failed(
        cls, user_message: str, internal_message: str | None = None
    ) -> ApiError:
        return cls(HTTPStatus.PRECONDITION_FAILED, user_message, internal_message)

    @classmethod
    def request_timeout(cls, user_message: str, internal_message: str | None = None) -> ApiError:
        return cls(HTTPStatus.REQUEST_TIMEOUT, user_message, internal_message)


class TemplateRenderError(ApiError):
    """The chart's image descriptor template could not be rendered into JSON."""

    def __init__(self, internal_message: str) -> None:
        super().__init__(
            HTTPStatus.UNPROCESSABLE_ENTITY,
            "unable to render ImageDescriptorTemplate",
            internal_message,
        )


class MergeError(ManifestError):
    """A document taking part in a JSON merge patch was not valid JSON."""


class PathNotFoundError(ManifestError):
    """A dotted JSON path did not resolve to a value."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"key not found: {path}")


class VariableResolutionError(ManifestError):
    """Scoped variable placeholders could not be resolved."""


class DuplicateReleaseCounterError(ManifestError):
    """Release counter stayed duplicated after the bounded repair loop."""

    def __init__(self, override_id: int, attempts: int) -> None:
        self.override_id = override_id
        self.attempts = attempts
        super().__init__(
            f"duplicate verification retry count exceeded max, overrideId: {override_id}, "
            f"count: {attempts}"
        )


class KubernetesError(ManifestError):
    """
    Structured Kubernetes API error.

    Kubernetes answers failures with a ``Status`` object:

        {"kind": "Status", "status": "Failure", "message": "...",
         "reason": "NotFound", "code": 404}

    ``reason`` drives the classification helpers below.
    """

    def __init__(
        self,
        code: int,
        message: str,
        reason: str | None = None,
        details: str | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.reason = reason
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Kubernetes API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def is_not_found(self) -> bool:
        return self.code == HTTPStatus.NOT_FOUND or self.reason == "NotFound"

    @property
    def is_bad_request(self) -> bool:
        return self.code == HTTPStatus.BAD_REQUEST or self.reason == "BadRequest"

    @property
    def is_server_timeout(self) -> bool:
        if self.code == HTTPStatus.GATEWAY_TIMEOUT:
            return True
        return self.reason in ("Timeout", "ServerTimeout")

    def to_api_error(self) -> ApiError:
        """Map the cluster failure onto the user-facing error taxonomy."""
        if self.is_not_found:
            return ApiError(HTTPStatus.NOT_FOUND, self.message, str(self))
        if self.is_bad_request:
            return ApiError.precondition_failed(self.message, str(self))
        if self.is_server_timeout:
            return ApiError.request_timeout(
                "taking longer than expected, please try again later", str(self)
            )
        return ApiError(HTTPStatus.INTERNAL_SERVER_ERROR, self.message, str(self))
