"""Token acquisition for Microsoft Graph and Azure Resource Manager."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import msal

from .config import DirectoryConfig
from .errors import AuthenticationError


logger = logging.getLogger(__name__)

AUTHORITY_BASE = "https://login.microsoftonline.com"
GRAPH_DEFAULT_SCOPE = ["https://graph.microsoft.com/.default"]
ARM_DEFAULT_SCOPE = ["https://management.azure.com/.default"]
# Delegated scopes requested when an operator signs in interactively.
GRAPH_ADMIN_SCOPES = [
    "https://graph.microsoft.com/Application.ReadWrite.All",
    "https://graph.microsoft.com/AppRoleAssignment.ReadWrite.All",
    "https://graph.microsoft.com/Organization.Read.All",
]
ARM_USER_SCOPES = ["https://management.azure.com/user_impersonation"]
SITE_ADMIN_SCOPES = ["https://graph.microsoft.com/Sites.FullControl.All"]


def _default_prompt(message: str) -> None:
    logger.warning(message)


class TokenProvider:
    """Wraps an msal application and hands out bearer tokens.

    A configured client secret selects the client-credential flow; otherwise
    the operator signs in through a public client, interactively in a browser
    or with a device code.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        prompt: Optional[Callable[[str], None]] = None,
        interactive: Optional[bool] = None,
    ) -> None:
        self._config = config
        self._prompt = prompt or _default_prompt
        self._interactive = config.interactive if interactive is None else interactive
        self.authority = f"{AUTHORITY_BASE}/{config.tenant_id}"
        self._app: Any
        if config.uses_client_credentials:
            self._app = msal.ConfidentialClientApplication(
                client_id=config.client_id,
                client_credential=config.client_secret,
                authority=self.authority,
            )
        else:
            self._app = msal.PublicClientApplication(config.client_id, authority=self.authority)
        self._last_result: Dict[str, Any] = {}

    @property
    def uses_client_credentials(self) -> bool:
        return self._config.uses_client_credentials

    @property
    def tenant_id(self) -> Optional[str]:
        """Tenant of the most recent sign-in, when the token response carried one."""

        claims = self._last_result.get("id_token_claims") or {}
        tenant = claims.get("tid")
        if tenant:
            return str(tenant)
        if self._config.tenant_id not in {"organizations", "common", "consumers"}:
            return self._config.tenant_id
        return None

    def acquire(self, user_scopes: Sequence[str], app_scopes: Sequence[str] = GRAPH_DEFAULT_SCOPE) -> str:
        """Return an access token; ``app_scopes`` apply to the client-credential flow."""

        if self.uses_client_credentials:
            scopes = list(app_scopes)
            result = self._app.acquire_token_silent(scopes, account=None)
            if not result:
                result = self._app.acquire_token_for_client(scopes=scopes)
        else:
            result = self._acquire_user_token(list(user_scopes))

        if not result or "access_token" not in result:
            result = result or {}
            raise AuthenticationError(
                f"{result.get('error', 'token_error')}: "
                f"{result.get('error_description', 'Unable to acquire an access token.')}"
            )
        self._last_result = result
        return str(result["access_token"])

    def _acquire_user_token(self, scopes: List[str]) -> Optional[Dict[str, Any]]:
        accounts = self._app.get_accounts()
        if accounts:
            result = self._app.acquire_token_silent(scopes, account=accounts[0])
            if result and "access_token" in result:
                return result

        if self._interactive:
            logger.info("Opening browser sign-in for scopes %s", ", ".join(scopes))
            return self._app.acquire_token_interactive(scopes=scopes)

        flow = self._app.initiate_device_flow(scopes=scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Failed to start device code sign-in: {flow.get('error_description', flow)}"
            )
        self._prompt(flow["message"])
        return self._app.acquire_token_by_device_flow(flow)


__all__ = [
    "ARM_DEFAULT_SCOPE",
    "ARM_USER_SCOPES",
    "GRAPH_ADMIN_SCOPES",
    "GRAPH_DEFAULT_SCOPE",
    "SITE_ADMIN_SCOPES",
    "TokenProvider",
]
