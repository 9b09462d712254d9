import json
from typing import Any, Dict, List, Optional

import pytest

from fe_reactivation.config import M365Config
from fe_reactivation.exchange_client import ExchangeClient, ExchangeCommandError
from fe_reactivation.m365_client import M365ConfigurationError


class DummyResponse:
    def __init__(self, status_code: int = 200, payload: Optional[Dict[str, Any]] = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.content = self.text.encode("utf-8")

    def json(self) -> Dict[str, Any]:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    def __init__(self, responses: List[DummyResponse]) -> None:
        self.responses = list(responses)
        self.posts: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> DummyResponse:
        self.posts.append({"url": url, **kwargs})
        return self.responses.pop(0)


class DummyApp:
    def __init__(self) -> None:
        self.scopes: List[List[str]] = []

    def acquire_token_silent(self, scopes, account=None):
        return None

    def acquire_token_for_client(self, scopes):
        self.scopes.append(list(scopes))
        return {"access_token": "exo-token"}


CONFIG = M365Config(
    tenant_id="tenant",
    client_id="client",
    client_secret="secret",
    exo_organization="contoso.onmicrosoft.com",
)


def _client(*responses: DummyResponse):
    session = DummySession(list(responses))
    app = DummyApp()
    return ExchangeClient(CONFIG, app=app, session=session), session, app


def test_invoke_posts_cmdlet_input() -> None:
    client, session, app = _client(DummyResponse(payload={"value": [{"Identity": "jane"}]}))

    mailbox = client.get_mailbox("jane@contoso.com")

    assert mailbox == {"Identity": "jane"}
    sent = session.posts[0]
    assert sent["url"] == "https://outlook.office365.com/adminapi/beta/tenant/InvokeCommand"
    assert sent["json"] == {
        "CmdletInput": {"CmdletName": "Get-Mailbox", "Parameters": {"Identity": "jane@contoso.com"}}
    }
    assert sent["headers"]["Authorization"] == "Bearer exo-token"
    assert sent["headers"]["X-AnchorMailbox"].endswith("@contoso.onmicrosoft.com")
    assert app.scopes == [["https://outlook.office365.com/.default"]]


def test_missing_mailbox_returns_none() -> None:
    client, _, _ = _client(
        DummyResponse(
            400,
            payload={
                "error": {
                    "code": "BadRequest",
                    "message": "|Microsoft.Exchange.Configuration.Tasks.ManagementObjectNotFoundException|"
                    "The operation couldn't be performed because object 'ghost' couldn't be found.",
                }
            },
        )
    )

    assert client.get_mailbox("ghost@contoso.com") is None


def test_other_errors_are_raised() -> None:
    client, _, _ = _client(DummyResponse(500, text="Server error"))

    with pytest.raises(ExchangeCommandError) as excinfo:
        client.convert_to_regular("jane@contoso.com")

    assert excinfo.value.cmdlet == "Set-Mailbox"
    assert excinfo.value.status_code == 500
    assert not excinfo.value.not_found


def test_clear_forwarding_sends_nulls() -> None:
    client, session, _ = _client(DummyResponse(payload={"value": []}))

    client.clear_forwarding("jane@contoso.com")

    assert session.posts[0]["json"]["CmdletInput"]["Parameters"] == {
        "Identity": "jane@contoso.com",
        "ForwardingAddress": None,
        "ForwardingSmtpAddress": None,
        "DeliverToMailboxAndForward": False,
    }


def test_empty_response_body_returns_no_objects() -> None:
    client, session, _ = _client(DummyResponse(204))

    assert client.invoke("Set-MailboxAutoReplyConfiguration", Identity="jane") == []


def test_add_distribution_group_member() -> None:
    client, session, _ = _client(DummyResponse(payload={"value": []}))

    client.add_distribution_group_member("allstaff@contoso.com", "jane@contoso.com")

    cmdlet = session.posts[0]["json"]["CmdletInput"]
    assert cmdlet["CmdletName"] == "Add-DistributionGroupMember"
    assert cmdlet["Parameters"]["Member"] == "jane@contoso.com"


def test_already_member_detection() -> None:
    error = ExchangeCommandError(
        "Add-DistributionGroupMember",
        400,
        "|Microsoft.Exchange.Management.Tasks.MemberAlreadyExistsException|The recipient is already a member.",
    )

    assert error.already_member
    assert not error.not_found


def test_requires_exchange_organization() -> None:
    config = M365Config(tenant_id="tenant", client_id="client", client_secret="secret")

    with pytest.raises(M365ConfigurationError):
        ExchangeClient(config, app=DummyApp(), session=DummySession([]))
