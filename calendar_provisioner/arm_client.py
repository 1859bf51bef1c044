"""Azure Resource Manager helper for importing certificates into Automation accounts."""
from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from .auth import ARM_DEFAULT_SCOPE, ARM_USER_SCOPES, TokenProvider
from .errors import ResourceManagerError


logger = logging.getLogger(__name__)

ARM_BASE_URL = "https://management.azure.com"
AUTOMATION_API_VERSION = "2023-11-01"
REQUEST_TIMEOUT = 60


class ResourceManagerClient:
    """Authenticated ARM session scoped to one subscription."""

    def __init__(self, tokens: TokenProvider, subscription_id: str) -> None:
        if not subscription_id:
            raise ResourceManagerError(
                0, "MissingSubscription", "A subscription id is required to reach Azure Resource Manager."
            )
        self._tokens = tokens
        self.subscription_id = subscription_id
        self._session = requests.Session()

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> "ResourceManagerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = ARM_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault(
            "Authorization", f"Bearer {self._tokens.acquire(ARM_USER_SCOPES, ARM_DEFAULT_SCOPE)}"
        )
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        logger.debug("ARM %s %s", method, url)
        try:
            response = self._session.request(method, url, timeout=REQUEST_TIMEOUT, headers=headers, **kwargs)
        except requests.RequestException as exc:
            raise ResourceManagerError(0, type(exc).__name__, str(exc)) from exc
        if response.status_code == 204:
            return {}
        if response.status_code >= 400:
            try:
                error = response.json().get("error", {})
                code = error.get("code", "ResourceManagerError")
                message = error.get("message", response.text)
            except ValueError:
                code = "ResourceManagerError"
                message = response.text or "Unknown Resource Manager error."
            raise ResourceManagerError(response.status_code, code, message)
        return response.json() if response.content else {}

    def import_certificate(
        self,
        account_name: str,
        resource_group: str,
        certificate_name: str,
        pfx_path: Path,
        password: str,
        exportable: bool = False,
        thumbprint: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create or replace a certificate asset in an Automation account from a PFX file."""

        try:
            encoded = base64.b64encode(Path(pfx_path).read_bytes()).decode("ascii")
        except OSError as exc:
            raise ResourceManagerError(0, "PfxUnreadable", f"Unable to read '{pfx_path}': {exc}") from exc

        properties: Dict[str, Any] = {
            "base64Value": encoded,
            "password": password,
            "isExportable": exportable,
            "description": "Certificate for calendar automation app-only authentication",
        }
        if thumbprint:
            properties["thumbprint"] = thumbprint
        path = (
            f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Automation/automationAccounts/{account_name}"
            f"/certificates/{certificate_name}"
        )
        result = self._request(
            "PUT",
            path,
            params={"api-version": AUTOMATION_API_VERSION},
            json={"name": certificate_name, "properties": properties},
        )
        logger.info("Imported certificate %s into Automation account %s", certificate_name, account_name)
        return result


__all__ = ["ResourceManagerClient"]
