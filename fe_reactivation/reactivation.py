"""Per-account reactivation steps and the sequential run over a reactivation list."""
from __future__ import annotations

import logging
import re
import secrets
import string
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import AppConfig
from .connection import Services
from .exchange_client import ExchangeCommandError
from .m365_client import M365ClientError, M365GraphError
from .models import (
    STEP_ERROR,
    STEP_SKIPPED,
    STEP_SUCCESS,
    STEP_WARNING,
    EmployeeTypeProfile,
    ReactivationRecord,
    RecordResult,
    RunSummary,
)


logger = logging.getLogger(__name__)

StepOutcome = Optional[Tuple[str, str]]

# Offboarding renames accounts to "FE_<name> M.DD.YY".
OFFBOARD_DATE_SUFFIX = re.compile(r"\s+\d{1,2}\.\d{1,2}\.\d{2,4}$")
GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
PASSWORD_SYMBOLS = "!@#$%^&*-_=+?"


def restore_display_name(display_name: Optional[str], prefix: str) -> Optional[str]:
    """Strip the offboarding prefix and date from ``display_name``.

    Returns ``None`` when the name does not carry the prefix.
    """

    name = (display_name or "").strip()
    if not prefix or not name.startswith(prefix):
        return None
    restored = OFFBOARD_DATE_SUFFIX.sub("", name[len(prefix) :]).strip()
    return restored or None


def generate_temporary_password(length: int = 16) -> str:
    """Generate a random password containing every character class Entra ID checks for."""

    classes = [string.ascii_uppercase, string.ascii_lowercase, string.digits, PASSWORD_SYMBOLS]
    length = max(length, len(classes))
    alphabet = "".join(classes)
    characters = [secrets.choice(group) for group in classes]
    characters.extend(secrets.choice(alphabet) for _ in range(length - len(classes)))
    secrets.SystemRandom().shuffle(characters)
    return "".join(characters)


def _is_already_member(exc: M365GraphError) -> bool:
    return exc.status_code == 400 and "already exist" in exc.description


class Reactivator:
    """Runs the reactivation steps for each record against the connected services."""

    def __init__(
        self,
        services: Services,
        config: AppConfig,
        password_provider: Optional[Callable[[ReactivationRecord], Optional[str]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._graph = services.graph
        self._exchange = services.exchange
        self._config = config
        self._password_provider = password_provider
        self._sleep = sleep
        self._group_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        self._memberships: Optional[Set[str]] = None

    # ------------------------------------------------------------------ #
    # Run orchestration                                                  #
    # ------------------------------------------------------------------ #
    def run(
        self,
        records: Iterable[ReactivationRecord],
        skipped_rows: int = 0,
        on_result: Optional[Callable[[RecordResult], None]] = None,
    ) -> RunSummary:
        summary = RunSummary(skipped_rows=skipped_rows)
        for record in records:
            result = self.process(record)
            summary.record(result)
            if on_result:
                on_result(result)

        logger.info(
            "Reactivation finished: %s processed, %s succeeded (%s with warnings), "
            "%s failed (%s not found), %s row(s) skipped.",
            summary.total,
            summary.succeeded,
            summary.warnings,
            summary.failed,
            summary.not_found,
            summary.skipped_rows,
        )
        return summary

    def process(self, record: ReactivationRecord) -> RecordResult:
        result = RecordResult(record=record)
        self._memberships = None
        logger.info("Reactivating %s (line %s)", record.email, record.line_number or "-")

        user = self._lookup(record, result)
        if user is None:
            return result

        profile = self._config.profile_for(record.employee_type)
        if record.employee_type and (
            profile is None or profile.name.lower() != record.employee_type.lower()
        ):
            message = f"unknown employee type '{record.employee_type}'"
            if profile is not None:
                message += f", using '{profile.name}' profile"
            logger.warning("%s: %s", record.email, message)
            result.add("employee_type", STEP_WARNING, message)

        self._run_step(result, "enable", self._enable, user)
        self._run_step(result, "password", self._reset_password, user, result)
        self._run_step(result, "display_name", self._restore_display_name, user)
        self._run_step(result, "licenses", self._assign_licenses, user, profile)
        self._mailbox_steps(result, user)
        self._remove_group_steps(result, user)
        self._add_group_steps(result, user, profile)
        self._run_step(result, "revoke_sessions", self._revoke_sessions, user)

        logger.info("Finished %s: %s", record.email, result.status)
        return result

    def _run_step(
        self,
        result: RecordResult,
        step: str,
        func: Callable[..., StepOutcome],
        *args: Any,
    ) -> str:
        email = result.record.email
        try:
            outcome = func(*args)
        except (M365ClientError, ExchangeCommandError) as exc:
            logger.error("%s: %s failed: %s", email, step, exc)
            result.add(step, STEP_ERROR, str(exc))
            return STEP_ERROR
        except Exception as exc:
            logger.exception("%s: unexpected error during %s: %s", email, step, exc)
            result.add(step, STEP_ERROR, str(exc))
            return STEP_ERROR

        status, message = outcome or (STEP_SUCCESS, "")
        if status == STEP_WARNING:
            logger.warning("%s: %s: %s", email, step, message)
        elif status == STEP_ERROR:
            logger.error("%s: %s: %s", email, step, message)
        elif status == STEP_SKIPPED:
            logger.info("%s: %s skipped%s", email, step, f" ({message})" if message else "")
        else:
            logger.info("%s: %s succeeded%s", email, step, f" ({message})" if message else "")
        result.add(step, status, message)
        return status

    # ------------------------------------------------------------------ #
    # Directory steps                                                    #
    # ------------------------------------------------------------------ #
    def _lookup(self, record: ReactivationRecord, result: RecordResult) -> Optional[Dict[str, Any]]:
        email = record.email
        try:
            user = self._graph.find_user(record.lookup)
            message = ""
            if user is None and self._config.reactivation.restore_deleted:
                user = self._restore_deleted(record)
                if user is not None:
                    message = "restored from deleted items"
        except M365ClientError as exc:
            logger.error("%s: lookup failed: %s", email, exc)
            result.add("lookup", STEP_ERROR, str(exc))
            return None
        except Exception as exc:
            logger.exception("%s: unexpected error during lookup: %s", email, exc)
            result.add("lookup", STEP_ERROR, str(exc))
            return None

        if user is None:
            logger.error("%s: user not found in the directory", email)
            result.not_found = True
            result.add("lookup", STEP_ERROR, "user not found")
            return None

        result.user_id = user["id"]
        result.user_principal_name = user.get("userPrincipalName")
        logger.info("%s: found %s (%s)", email, result.user_principal_name, result.user_id)
        result.add("lookup", STEP_SUCCESS, message)
        return user

    def _restore_deleted(self, record: ReactivationRecord) -> Optional[Dict[str, Any]]:
        deleted = self._graph.find_deleted_user(record.lookup)
        if not deleted:
            return None

        user_id = deleted["id"]
        logger.info("%s: restoring deleted user %s", record.email, user_id)
        self._graph.restore_user(user_id)

        attempts = self._config.connection.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return self._graph.get_user(user_id)
            except M365GraphError as exc:
                if exc.status_code != 404 or attempt == attempts:
                    raise
                logger.info(
                    "%s: restore not visible yet (attempt %s/%s)", record.email, attempt, attempts
                )
                self._sleep(self._config.connection.retry_delay)
        return None

    def _enable(self, user: Dict[str, Any]) -> StepOutcome:
        if user.get("accountEnabled") is True:
            return STEP_SKIPPED, "already enabled"
        self._graph.enable_account(user["id"])
        return None

    def _reset_password(self, user: Dict[str, Any], result: RecordResult) -> StepOutcome:
        settings = self._config.reactivation
        password = None
        if self._password_provider:
            password = self._password_provider(result.record)
            source = "provided"
        if not password and settings.temporary_password:
            password = settings.temporary_password
            source = "configured"
        if not password:
            password = generate_temporary_password(settings.password_length)
            source = "generated"
        self._graph.reset_password(user["id"], password, force_change=settings.force_change_password)
        result.temporary_password = password
        return STEP_SUCCESS, f"{source} temporary password set"

    def _restore_display_name(self, user: Dict[str, Any]) -> StepOutcome:
        current = user.get("displayName")
        restored = restore_display_name(current, self._config.reactivation.display_name_prefix)
        if restored is None:
            return STEP_SKIPPED, "no offboarding prefix"
        self._graph.update_user(user["id"], displayName=restored)
        return STEP_SUCCESS, f"renamed to '{restored}'"

    def _assign_licenses(
        self, user: Dict[str, Any], profile: Optional[EmployeeTypeProfile]
    ) -> StepOutcome:
        if profile is None or not profile.licenses:
            return STEP_SKIPPED, "no licenses configured"

        user_id = user["id"]
        if not user.get("usageLocation"):
            location = profile.usage_location or self._config.m365.default_usage_location
            if not location:
                return STEP_WARNING, "usage location missing and none configured"
            self._graph.update_user(user_id, usageLocation=location)

        assigned = {
            str(entry.get("skuId") or "").lower() for entry in user.get("assignedLicenses") or []
        }
        added: List[str] = []
        failures: List[str] = []
        for selection in profile.licenses:
            if selection.sku_id.lower() in assigned:
                continue
            try:
                self._graph.assign_license(user_id, selection.sku_id, selection.disabled_plans)
            except M365ClientError as exc:
                logger.error("%s: license %s failed: %s", user.get("userPrincipalName"), selection.sku_id, exc)
                failures.append(f"{selection.sku_id}: {exc}")
                continue
            added.append(selection.sku_id)

        if failures:
            return STEP_ERROR, "; ".join(failures)
        if not added:
            return STEP_SKIPPED, "licenses already assigned"
        return STEP_SUCCESS, f"assigned {', '.join(added)}"

    def _revoke_sessions(self, user: Dict[str, Any]) -> StepOutcome:
        if not self._config.reactivation.revoke_sessions:
            return STEP_SKIPPED, "disabled in configuration"
        self._graph.revoke_sign_in_sessions(user["id"])
        return None

    # ------------------------------------------------------------------ #
    # Mailbox steps                                                      #
    # ------------------------------------------------------------------ #
    def _mailbox_identity(self, user: Dict[str, Any]) -> str:
        return str(user.get("userPrincipalName") or user.get("mail") or user["id"])

    def _mailbox_steps(self, result: RecordResult, user: Dict[str, Any]) -> None:
        if self._exchange is None:
            self._run_step(
                result,
                "mailbox",
                lambda: (STEP_WARNING, "Exchange Online not configured"),
            )
            return

        identity = self._mailbox_identity(user)
        holder: Dict[str, Any] = {}

        def _load() -> StepOutcome:
            mailbox = self._exchange.get_mailbox(identity)
            if mailbox is None:
                return STEP_WARNING, "no mailbox found"
            holder["mailbox"] = mailbox
            return STEP_SUCCESS, str(mailbox.get("RecipientTypeDetails") or "")

        if self._run_step(result, "mailbox", _load) != STEP_SUCCESS:
            return

        mailbox = holder["mailbox"]
        settings = self._config.mailbox
        if settings.convert_to_regular:
            self._run_step(result, "mailbox_type", self._convert_mailbox, identity, mailbox)
        if settings.unhide:
            self._run_step(result, "address_lists", self._unhide_mailbox, identity, mailbox)
        if settings.clear_forwarding:
            self._run_step(result, "forwarding", self._clear_forwarding, identity, mailbox)
        if settings.disable_auto_reply:
            self._run_step(result, "auto_reply", self._disable_auto_reply, identity)
        if settings.clear_delivery_restrictions:
            self._run_step(
                result, "delivery_restrictions", self._clear_delivery_restrictions, identity, mailbox
            )

    def _convert_mailbox(self, identity: str, mailbox: Dict[str, Any]) -> StepOutcome:
        kind = mailbox.get("RecipientTypeDetails")
        if kind != "SharedMailbox":
            return STEP_SKIPPED, f"mailbox is {kind or 'unknown'}"
        self._exchange.convert_to_regular(identity)
        return STEP_SUCCESS, "converted shared mailbox to regular"

    def _unhide_mailbox(self, identity: str, mailbox: Dict[str, Any]) -> StepOutcome:
        if mailbox.get("HiddenFromAddressListsEnabled") is False:
            return STEP_SKIPPED, "already visible"
        self._exchange.set_hidden_from_address_lists(identity, False)
        return None

    def _clear_forwarding(self, identity: str, mailbox: Dict[str, Any]) -> StepOutcome:
        if not (mailbox.get("ForwardingAddress") or mailbox.get("ForwardingSmtpAddress")):
            return STEP_SKIPPED, "no forwarding set"
        self._exchange.clear_forwarding(identity)
        return None

    def _disable_auto_reply(self, identity: str) -> StepOutcome:
        self._exchange.disable_auto_reply(identity)
        return None

    def _clear_delivery_restrictions(self, identity: str, mailbox: Dict[str, Any]) -> StepOutcome:
        restricted = (
            mailbox.get("AcceptMessagesOnlyFromSendersOrMembers")
            or mailbox.get("RejectMessagesFromSendersOrMembers")
            or mailbox.get("RequireSenderAuthenticationEnabled")
        )
        if not restricted:
            return STEP_SKIPPED, "no restrictions set"
        self._exchange.clear_delivery_restrictions(identity)
        return None

    # ------------------------------------------------------------------ #
    # Group steps                                                        #
    # ------------------------------------------------------------------ #
    def _current_memberships(self, user_id: str) -> Set[str]:
        if self._memberships is None:
            self._memberships = set(self._graph.get_user_groups(user_id))
        return self._memberships

    def _resolve_group(self, reference: str) -> Optional[Dict[str, Any]]:
        key = reference.strip().lower()
        if key in self._group_cache:
            return self._group_cache[key]

        if GUID_PATTERN.match(reference.strip()):
            try:
                group: Optional[Dict[str, Any]] = self._graph.get_group(reference.strip())
            except M365GraphError as exc:
                if exc.status_code != 404:
                    raise
                group = None
        else:
            matches = self._graph.find_groups_by_name(reference)
            if len(matches) > 1:
                raise M365ClientError(
                    f"Group name '{reference}' is ambiguous ({len(matches)} matches); use the group id."
                )
            group = matches[0] if matches else None

        self._group_cache[key] = group
        return group

    def _remove_group_steps(self, result: RecordResult, user: Dict[str, Any]) -> None:
        for reference in self._config.reactivation.remove_groups:
            self._run_step(result, f"remove_group:{reference}", self._remove_group, user, reference)

    def _remove_group(self, user: Dict[str, Any], reference: str) -> StepOutcome:
        group = self._resolve_group(reference)
        if group is None:
            return STEP_WARNING, "group not found"
        if group["id"] not in self._current_memberships(user["id"]):
            return STEP_SKIPPED, "not a member"
        self._graph.remove_user_from_group(user["id"], group["id"])
        self._current_memberships(user["id"]).discard(group["id"])
        return None

    def _add_group_steps(
        self, result: RecordResult, user: Dict[str, Any], profile: Optional[EmployeeTypeProfile]
    ) -> None:
        if profile is None or not profile.groups:
            return
        for reference in profile.groups:
            self._run_step(result, f"group:{reference}", self._add_group, user, reference)

    def _add_group(self, user: Dict[str, Any], reference: str) -> StepOutcome:
        group = self._resolve_group(reference)
        if group is None:
            return STEP_WARNING, "group not found"

        group_id = group["id"]
        if group_id in self._current_memberships(user["id"]):
            return STEP_SKIPPED, "already a member"

        group_types = group.get("groupTypes") or []
        if group.get("onPremisesSyncEnabled"):
            return STEP_WARNING, "on-premises synced group, membership is managed in AD"
        if group.get("membershipRule") or "DynamicMembership" in group_types:
            return STEP_WARNING, "dynamic group, membership is rule-based"

        if group.get("mailEnabled") and "Unified" not in group_types:
            if self._exchange is None:
                return STEP_WARNING, "distribution list requires Exchange Online"
            try:
                self._exchange.add_distribution_group_member(
                    str(group.get("mail") or group_id), self._mailbox_identity(user)
                )
            except ExchangeCommandError as exc:
                if exc.already_member:
                    return STEP_SKIPPED, "already a member"
                raise
        else:
            try:
                self._graph.add_user_to_group(user["id"], group_id)
            except M365GraphError as exc:
                if _is_already_member(exc):
                    return STEP_SKIPPED, "already a member"
                raise

        self._current_memberships(user["id"]).add(group_id)
        return STEP_SUCCESS, str(group.get("displayName") or group_id)


__all__ = ["Reactivator", "generate_temporary_password", "restore_display_name"]
