"""Microsoft 365 Graph helper utilities."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional

import msal
import requests

from .config import M365Config


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30
DELETED_UPN_PREFIX = re.compile(r"^[0-9a-f]{32}(?=[^@]+@)")

USER_SELECT = "id,userPrincipalName,displayName,mail,accountEnabled,usageLocation,assignedLicenses"
GROUP_SELECT = (
    "id,displayName,mailNickname,mail,mailEnabled,securityEnabled,groupTypes,"
    "onPremisesSyncEnabled,membershipRule"
)

logger = logging.getLogger(__name__)


class M365ClientError(RuntimeError):
    """Base exception for Microsoft 365 client operations."""


class M365ConfigurationError(M365ClientError):
    """Raised when the Microsoft 365 integration is not configured."""


class M365GraphError(M365ClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


def _escape(value: str) -> str:
    return value.replace("'", "''")


def _strip_deleted_prefix(upn: str) -> str:
    return DELETED_UPN_PREFIX.sub("", upn)


def build_client_credential(config: M365Config) -> Any:
    """Return the MSAL client credential: a certificate when configured, else the secret."""

    if config.has_certificate:
        try:
            private_key = config.certificate_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise M365ConfigurationError(
                f"Unable to read certificate '{config.certificate_path}': {exc}"
            ) from exc
        return {"private_key": private_key, "thumbprint": config.cert_thumbprint}
    return config.client_secret


def build_msal_app(config: M365Config) -> msal.ConfidentialClientApplication:
    if not config.has_credentials:
        raise M365ConfigurationError(
            "Microsoft 365 credentials are not configured. "
            "Provide tenant_id, client_id, and client_secret or a certificate."
        )
    return msal.ConfidentialClientApplication(
        client_id=config.client_id,
        client_credential=build_client_credential(config),
        authority=f"https://login.microsoftonline.com/{config.tenant_id}",
    )


class M365Client:
    """Lightweight Microsoft Graph client covering the directory operations used on reactivation."""

    def __init__(
        self,
        config: M365Config,
        app: Optional[msal.ConfidentialClientApplication] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._app = app or build_msal_app(config)
        self._session = session or requests.Session()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
        if not result:
            result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)

        if "access_token" not in result:
            raise M365GraphError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("https://") else GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        logger.debug("Graph %s %s", method, url)
        response = self._session.request(
            method,
            url,
            timeout=REQUEST_TIMEOUT,
            headers=headers,
            **kwargs,
        )
        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            raise M365GraphError(response.status_code, code, message)

        if not response.content:
            return {}
        return response.json()

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        result = self._request("GET", path, params=params)
        while True:
            for item in result.get("value", []):
                yield item
            next_link = result.get("@odata.nextLink")
            if not next_link:
                return
            result = self._request("GET", next_link)

    def check_connection(self) -> Dict[str, Any]:
        """Fetch the tenant organization record to prove the credentials work."""

        result = self._request("GET", "/organization", params={"$select": "id,displayName"})
        values = result.get("value") or []
        return values[0] if values else {}

    # ------------------------------------------------------------------ #
    # User helpers                                                       #
    # ------------------------------------------------------------------ #
    def find_user(self, query: str, select: Optional[str] = USER_SELECT) -> Optional[Dict[str, Any]]:
        cleaned = (query or "").strip()
        if not cleaned:
            return None
        escaped = _escape(cleaned)
        filters = [
            f"userPrincipalName eq '{escaped}'",
            f"mail eq '{escaped}'",
        ]
        params = {"$filter": " or ".join(filters)}
        if select:
            params["$select"] = select
        result = self._request("GET", "/users", params=params)
        values = result.get("value") or []
        return values[0] if values else None

    def get_user(self, user_id: str, select: Optional[str] = USER_SELECT) -> Dict[str, Any]:
        params = {"$select": select} if select else None
        return self._request("GET", f"/users/{user_id}", params=params)

    def find_deleted_user(self, query: str) -> Optional[Dict[str, Any]]:
        """Search the directory recycle bin for a user matching ``query``.

        Deleted users keep their mail address but have their UPN prefixed with
        the object id, which is stripped before comparing.
        """

        lookup = (query or "").strip().lower()
        if not lookup:
            return None
        params = {"$select": "id,userPrincipalName,mail,displayName,deletedDateTime"}
        for deleted in self._paged("/directory/deletedItems/microsoft.graph.user", params):
            deleted_upn = (deleted.get("userPrincipalName") or "").lower()
            deleted_mail = (deleted.get("mail") or "").lower()
            if deleted_mail == lookup or _strip_deleted_prefix(deleted_upn) == lookup:
                return deleted
        return None

    def restore_user(self, user_id: str) -> Dict[str, Any]:
        return self._request("POST", f"/directory/deletedItems/{user_id}/restore")

    def update_user(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        payload = {key: value for key, value in fields.items() if value is not None}
        if not payload:
            return {}
        return self._request("PATCH", f"/users/{user_id}", json=payload)

    def enable_account(self, user_id: str) -> None:
        self._request("PATCH", f"/users/{user_id}", json={"accountEnabled": True})

    def reset_password(self, user_id: str, password: str, force_change: bool = True) -> None:
        payload = {
            "passwordProfile": {
                "password": password,
                "forceChangePasswordNextSignIn": force_change,
            }
        }
        self._request("PATCH", f"/users/{user_id}", json=payload)

    def assign_license(
        self,
        user_id: str,
        sku_id: str,
        disabled_plans: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        payload = {
            "addLicenses": [
                {
                    "skuId": sku_id,
                    "disabledPlans": list(disabled_plans or []),
                }
            ],
            "removeLicenses": [],
        }
        return self._request("POST", f"/users/{user_id}/assignLicense", json=payload)

    def revoke_sign_in_sessions(self, user_id: str) -> bool:
        result = self._request("POST", f"/users/{user_id}/revokeSignInSessions")
        return bool(result.get("value", True))

    # ------------------------------------------------------------------ #
    # Group helpers                                                      #
    # ------------------------------------------------------------------ #
    def find_groups_by_name(self, name: str) -> List[Dict[str, Any]]:
        params = {
            "$filter": f"displayName eq '{_escape(name.strip())}'",
            "$select": GROUP_SELECT,
        }
        result = self._request("GET", "/groups", params=params)
        return result.get("value", [])

    def add_user_to_group(self, user_id: str, group_id: str) -> None:
        payload = {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{user_id}"}
        self._request("POST", f"/groups/{group_id}/members/$ref", json=payload)

    def remove_user_from_group(self, user_id: str, group_id: str) -> None:
        self._request("DELETE", f"/groups/{group_id}/members/{user_id}/$ref")

    def get_user_groups(self, user_id: str) -> List[str]:
        """Get list of group IDs the user is a direct member of."""
        return [
            group["id"]
            for group in self._paged(f"/users/{user_id}/memberOf", {"$select": "id"})
            if group.get("id")
        ]

    def get_group(self, group_id: str) -> Dict[str, Any]:
        """Get group details by ID."""
        return self._request("GET", f"/groups/{group_id}", params={"$select": GROUP_SELECT})


__all__ = [
    "GRAPH_BASE_URL",
    "M365Client",
    "M365ClientError",
    "M365ConfigurationError",
    "M365GraphError",
    "build_msal_app",
]
