"""Exception types shared by the provisioning clients and stages."""
from __future__ import annotations

import re
from typing import Optional


class ProvisioningError(RuntimeError):
    """Base exception for provisioning operations."""


class AuthenticationError(ProvisioningError):
    """Raised when a token cannot be acquired for a remote service."""


class CertificateError(ProvisioningError):
    """Raised when identity material cannot be generated or exported."""


class StateError(ProvisioningError):
    """Raised when the provisioning state file is missing or incompatible."""


class RemoteServiceError(ProvisioningError):
    """Raised when a remote API returns an error response."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


class DirectoryError(RemoteServiceError):
    """Raised when the Microsoft Graph directory API returns an error."""


class ResourceManagerError(RemoteServiceError):
    """Raised when Azure Resource Manager returns an error."""


class SiteAdminError(RemoteServiceError):
    """Raised when a site permission call fails."""


_ALREADY_EXISTS_PATTERNS = (
    re.compile(r"already\s+exists", re.IGNORECASE),
    re.compile(r"already\s+(been\s+)?(granted|assigned)", re.IGNORECASE),
    re.compile(r"\bduplicate\b", re.IGNORECASE),
    re.compile(r"\bconflict\b", re.IGNORECASE),
)


def is_already_exists_error(error: Optional[object]) -> bool:
    """Return ``True`` when an error (or its message) means the grant is already in place."""

    if error is None:
        return False
    if isinstance(error, RemoteServiceError) and error.status_code == 409:
        return True
    message = str(error)
    if not message.strip():
        return False
    return any(pattern.search(message) for pattern in _ALREADY_EXISTS_PATTERNS)


__all__ = [
    "AuthenticationError",
    "CertificateError",
    "DirectoryError",
    "ProvisioningError",
    "RemoteServiceError",
    "ResourceManagerError",
    "SiteAdminError",
    "StateError",
    "is_already_exists_error",
]
