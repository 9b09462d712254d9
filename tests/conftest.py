import copy
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fe_reactivation.config import (
    AppConfig,
    ConnectionConfig,
    LoggingConfig,
    M365Config,
    ReactivationConfig,
    StorageConfig,
)
from fe_reactivation.connection import Services
from fe_reactivation.exchange_client import ExchangeCommandError
from fe_reactivation.m365_client import M365GraphError
from fe_reactivation.models import EmployeeTypeProfile, LicenseSelection


JANE = {
    "id": "u-jane",
    "userPrincipalName": "jane.doe@contoso.com",
    "mail": "jane.doe@contoso.com",
    "displayName": "FE_Jane Doe 3.04.25",
    "accountEnabled": False,
    "usageLocation": None,
    "assignedLicenses": [],
}

GROUPS = {
    "g-former": {
        "id": "g-former",
        "displayName": "Former Employees",
        "mailEnabled": False,
        "securityEnabled": True,
        "groupTypes": [],
    },
    "g-staff": {
        "id": "g-staff",
        "displayName": "All Staff",
        "mailEnabled": False,
        "securityEnabled": True,
        "groupTypes": [],
    },
    "g-contract": {
        "id": "g-contract",
        "displayName": "Contractors",
        "mailEnabled": False,
        "securityEnabled": True,
        "groupTypes": [],
    },
}

SHARED_MAILBOX = {
    "Identity": "jane.doe@contoso.com",
    "RecipientTypeDetails": "SharedMailbox",
    "HiddenFromAddressListsEnabled": True,
    "ForwardingAddress": "manager@contoso.com",
    "ForwardingSmtpAddress": None,
    "AcceptMessagesOnlyFromSendersOrMembers": [],
    "RejectMessagesFromSendersOrMembers": [],
    "RequireSenderAuthenticationEnabled": True,
}


class FakeGraph:
    """In-memory stand-in for ``M365Client``."""

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {JANE["mail"]: copy.deepcopy(JANE)}
        self.deleted: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, Dict[str, Any]] = copy.deepcopy(GROUPS)
        self.memberships: Dict[str, set] = {"u-jane": {"g-former"}}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def find_user(self, query: str, select: Optional[str] = None) -> Optional[Dict[str, Any]]:
        self._call("find_user", query)
        user = self.users.get(query.lower())
        return copy.deepcopy(user) if user else None

    def find_deleted_user(self, query: str) -> Optional[Dict[str, Any]]:
        self._call("find_deleted_user", query)
        return self.deleted.get(query.lower())

    def restore_user(self, user_id: str) -> Dict[str, Any]:
        self._call("restore_user", user_id)
        for key, user in list(self.deleted.items()):
            if user["id"] == user_id:
                self.users[key] = self.deleted.pop(key)
        return {}

    def get_user(self, user_id: str, select: Optional[str] = None) -> Dict[str, Any]:
        self._call("get_user", user_id)
        for user in self.users.values():
            if user["id"] == user_id:
                return copy.deepcopy(user)
        raise M365GraphError(404, "Request_ResourceNotFound", "missing")

    def enable_account(self, user_id: str) -> None:
        self._call("enable_account", user_id)

    def reset_password(self, user_id: str, password: str, force_change: bool = True) -> None:
        self._call("reset_password", user_id, password, force_change)

    def update_user(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        self._call("update_user", user_id, fields)
        return {}

    def assign_license(self, user_id: str, sku_id: str, disabled_plans=None):
        self._call("assign_license", user_id, sku_id, list(disabled_plans or []))
        return {}

    def revoke_sign_in_sessions(self, user_id: str) -> bool:
        self._call("revoke_sign_in_sessions", user_id)
        return True

    def get_user_groups(self, user_id: str) -> List[str]:
        self._call("get_user_groups", user_id)
        return sorted(self.memberships.get(user_id, set()))

    def get_group(self, group_id: str) -> Dict[str, Any]:
        self._call("get_group", group_id)
        if group_id not in self.groups:
            raise M365GraphError(404, "Request_ResourceNotFound", "missing")
        return copy.deepcopy(self.groups[group_id])

    def find_groups_by_name(self, name: str) -> List[Dict[str, Any]]:
        self._call("find_groups_by_name", name)
        return [copy.deepcopy(g) for g in self.groups.values() if g["displayName"] == name]

    def add_user_to_group(self, user_id: str, group_id: str) -> None:
        self._call("add_user_to_group", user_id, group_id)
        self.memberships.setdefault(user_id, set()).add(group_id)

    def remove_user_from_group(self, user_id: str, group_id: str) -> None:
        self._call("remove_user_from_group", user_id, group_id)
        self.memberships.get(user_id, set()).discard(group_id)


class FakeExchange:
    """In-memory stand-in for ``ExchangeClient``."""

    def __init__(self) -> None:
        self.mailboxes: Dict[str, Dict[str, Any]] = {
            "jane.doe@contoso.com": copy.deepcopy(SHARED_MAILBOX)
        }
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def check_connection(self):
        self._call("check_connection")
        return []

    def get_mailbox(self, identity: str) -> Optional[Dict[str, Any]]:
        self._call("get_mailbox", identity)
        return copy.deepcopy(self.mailboxes.get(identity))

    def convert_to_regular(self, identity: str) -> None:
        self._call("convert_to_regular", identity)

    def set_hidden_from_address_lists(self, identity: str, hidden: bool) -> None:
        self._call("set_hidden_from_address_lists", identity, hidden)

    def clear_forwarding(self, identity: str) -> None:
        self._call("clear_forwarding", identity)

    def disable_auto_reply(self, identity: str) -> None:
        self._call("disable_auto_reply", identity)

    def clear_delivery_restrictions(self, identity: str) -> None:
        self._call("clear_delivery_restrictions", identity)

    def add_distribution_group_member(self, group_identity: str, member: str) -> None:
        self._call("add_distribution_group_member", group_identity, member)


def build_config(**reactivation: Any) -> AppConfig:
    settings = {"remove_groups": ("Former Employees",)}
    settings.update(reactivation)
    return AppConfig(
        m365=M365Config(
            tenant_id="tenant",
            client_id="client",
            client_secret="secret",
            exo_organization="contoso.onmicrosoft.com",
            default_usage_location="US",
        ),
        connection=ConnectionConfig(max_attempts=3, retry_delay=0),
        reactivation=ReactivationConfig(**settings),
        employee_types={
            "default": EmployeeTypeProfile(
                name="default",
                groups=["All Staff"],
                licenses=[LicenseSelection(sku_id="sku-e3")],
            ),
            "Contractor": EmployeeTypeProfile(name="Contractor", groups=["Contractors"]),
        },
        logging=LoggingConfig(file=None),
        storage=StorageConfig(report_dir=Path("reports")),
    )


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def config() -> AppConfig:
    return build_config()


@pytest.fixture
def services(graph: FakeGraph, exchange: FakeExchange) -> Services:
    return Services(graph=graph, exchange=exchange, organization="Contoso")


@pytest.fixture
def make_config():
    return build_config


@pytest.fixture
def exchange_error():
    def _make(message: str, cmdlet: str = "Set-Mailbox") -> ExchangeCommandError:
        return ExchangeCommandError(cmdlet, 400, message)

    return _make
