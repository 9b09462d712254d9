"""Exchange Online helper running mailbox cmdlets over the admin REST endpoint."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import msal
import requests

from .config import M365Config
from .m365_client import M365ConfigurationError, build_msal_app


EXO_SCOPE = ["https://outlook.office365.com/.default"]
EXO_BASE_URL = "https://outlook.office365.com/adminapi/beta"
REQUEST_TIMEOUT = 120
SYSTEM_MAILBOX = "SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}"

NOT_FOUND_MARKERS = ("ManagementObjectNotFoundException", "couldn't be found")
ALREADY_MEMBER_MARKERS = ("MemberAlreadyExistsException", "already a member")

logger = logging.getLogger(__name__)


class ExchangeCommandError(RuntimeError):
    """Raised when an Exchange Online cmdlet fails."""

    def __init__(self, cmdlet: str, status_code: int, message: str) -> None:
        super().__init__(f"{cmdlet} failed ({status_code}): {message}")
        self.cmdlet = cmdlet
        self.status_code = status_code
        self.message = message

    @property
    def not_found(self) -> bool:
        return any(marker in self.message for marker in NOT_FOUND_MARKERS)

    @property
    def already_member(self) -> bool:
        return any(marker in self.message for marker in ALREADY_MEMBER_MARKERS)


class ExchangeClient:
    """Runs the handful of Exchange Online cmdlets needed to restore a mailbox."""

    def __init__(
        self,
        config: M365Config,
        app: Optional[msal.ConfidentialClientApplication] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not config.has_exo_credentials:
            raise M365ConfigurationError(
                "Exchange Online is not configured. Provide exo_organization alongside "
                "the Microsoft 365 credentials."
            )
        self._config = config
        self._app = app or build_msal_app(config)
        self._session = session or requests.Session()
        self._url = f"{EXO_BASE_URL}/{config.tenant_id}/InvokeCommand"

    def _acquire_token(self) -> str:
        result = self._app.acquire_token_silent(EXO_SCOPE, account=None)
        if not result:
            result = self._app.acquire_token_for_client(scopes=EXO_SCOPE)
        if "access_token" not in result:
            raise ExchangeCommandError(
                "token",
                0,
                result.get("error_description", "Unable to acquire Exchange Online token."),
            )
        return str(result["access_token"])

    def invoke(self, cmdlet: str, **parameters: Any) -> List[Dict[str, Any]]:
        """Run ``cmdlet`` with ``parameters`` and return its output objects."""

        headers = {
            "Authorization": f"Bearer {self._acquire_token()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-ResponseFormat": "json",
            "X-AnchorMailbox": f"UPN:{SYSTEM_MAILBOX}@{self._config.exo_organization}",
        }
        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters}}
        logger.debug("Exchange %s %s", cmdlet, parameters.get("Identity", ""))
        response = self._session.post(
            self._url,
            json=body,
            headers=headers,
            timeout=REQUEST_TIMEOUT,
        )
        if response.status_code >= 400:
            try:
                payload = response.json()
                message = payload.get("error", {}).get("message", response.text)
            except ValueError:
                message = response.text or "Unknown Exchange error."
            raise ExchangeCommandError(cmdlet, response.status_code, message)

        if response.status_code == 204 or not response.content:
            return []
        return response.json().get("value", [])

    def check_connection(self) -> List[Dict[str, Any]]:
        return self.invoke("Get-AcceptedDomain")

    def get_mailbox(self, identity: str) -> Optional[Dict[str, Any]]:
        try:
            values = self.invoke("Get-Mailbox", Identity=identity)
        except ExchangeCommandError as exc:
            if exc.not_found:
                return None
            raise
        return values[0] if values else None

    def convert_to_regular(self, identity: str) -> None:
        self.invoke("Set-Mailbox", Identity=identity, Type="Regular")

    def set_hidden_from_address_lists(self, identity: str, hidden: bool) -> None:
        self.invoke("Set-Mailbox", Identity=identity, HiddenFromAddressListsEnabled=hidden)

    def clear_forwarding(self, identity: str) -> None:
        self.invoke(
            "Set-Mailbox",
            Identity=identity,
            ForwardingAddress=None,
            ForwardingSmtpAddress=None,
            DeliverToMailboxAndForward=False,
        )

    def disable_auto_reply(self, identity: str) -> None:
        self.invoke("Set-MailboxAutoReplyConfiguration", Identity=identity, AutoReplyState="Disabled")

    def clear_delivery_restrictions(self, identity: str) -> None:
        self.invoke(
            "Set-Mailbox",
            Identity=identity,
            AcceptMessagesOnlyFromSendersOrMembers=None,
            RejectMessagesFromSendersOrMembers=None,
            RequireSenderAuthenticationEnabled=False,
        )

    def add_distribution_group_member(self, group_identity: str, member: str) -> None:
        self.invoke(
            "Add-DistributionGroupMember",
            Identity=group_identity,
            Member=member,
            BypassSecurityGroupManagerCheck=True,
        )


__all__ = ["ExchangeClient", "ExchangeCommandError"]
