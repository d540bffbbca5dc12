"""
Custom exceptions for the validator registry services.
"""

from __future__ import annotations

from http import HTTPStatus


class ManifestServiceError(Exception):
    """Base exception class for the registry services."""

    def __init__(self, message: str, status_code: HTTPStatus | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = (
            status_code if status_code is not None else HTTPStatus.INTERNAL_SERVER_ERROR
        )


class DecodeError(ManifestServiceError):
    """Raised for a malformed manifest or trusted-list payload."""

    def __init__(self, message: str) -> None:
        super().__init__(message, HTTPStatus.BAD_REQUEST)


class SignatureInvalid(ManifestServiceError):
    """Raised when a manifest self-signature does not verify."""

    def __init__(self, message: str = "Manifest signature is invalid.") -> None:
        super().__init__(message, HTTPStatus.UNPROCESSABLE_ENTITY)


class AttestationInvalid(ManifestServiceError):
    """Raised when a domain ownership proof fails or is absent."""

    def __init__(self, message: str = "Domain attestation is invalid.") -> None:
        super().__init__(message, HTTPStatus.UNPROCESSABLE_ENTITY)


class NetworkFailure(ManifestServiceError):
    """Raised for fetch errors and timeouts against any external source."""

    def __init__(self, message: str = "External source is unavailable.") -> None:
        super().__init__(message, HTTPStatus.BAD_GATEWAY)


class IntegrityAnomaly(ManifestServiceError):
    """Raised or reported for data that is well-formed but inconsistent.

    Examples are tied maximum sequences for one master key or a manifest that
    verifies but carries no master key.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message, HTTPStatus.CONFLICT)


class ConfigurationError(ManifestServiceError):
    """Exception raised for configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message, HTTPStatus.INTERNAL_SERVER_ERROR)
