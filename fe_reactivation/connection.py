"""Connecting to Microsoft Graph and Exchange Online with a bounded retry loop."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type

import requests

from .config import AppConfig
from .exchange_client import ExchangeClient, ExchangeCommandError
from .m365_client import M365Client, M365ClientError, M365ConfigurationError, build_msal_app


logger = logging.getLogger(__name__)


class ServiceConnectionError(RuntimeError):
    """Raised when the remote services cannot be reached after all attempts."""

    def __init__(self, service: str, attempts: int, last_error: Optional[BaseException]) -> None:
        super().__init__(f"Unable to connect to {service} after {attempts} attempt(s): {last_error}")
        self.service = service
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class Services:
    graph: M365Client
    exchange: Optional[ExchangeClient] = None
    organization: str = ""

    @property
    def has_exchange(self) -> bool:
        return self.exchange is not None


# Errors worth another attempt once the client exists.
TRANSIENT_ERRORS = (M365ClientError, ExchangeCommandError, requests.RequestException)
# MSAL resolves the tenant authority while the app is built and reports an
# unreachable or unknown authority as ValueError.
AUTHORITY_ERRORS = (requests.RequestException, ValueError)


def _verify(
    service: str,
    check: Callable[[], object],
    max_attempts: int,
    retry_delay: float,
    sleep: Callable[[float], None],
    transient: Tuple[Type[BaseException], ...] = TRANSIENT_ERRORS,
) -> object:
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        try:
            return check()
        except M365ConfigurationError as exc:
            raise ServiceConnectionError(service, attempt, exc) from exc
        except transient as exc:
            last_error = exc
            logger.warning(
                "Connection to %s failed (attempt %s/%s): %s", service, attempt, max_attempts, exc
            )
            if attempt < max_attempts:
                sleep(retry_delay)
    raise ServiceConnectionError(service, max_attempts, last_error)


def connect_services(
    config: AppConfig,
    sleep: Callable[[float], None] = time.sleep,
    graph_factory: Callable[..., M365Client] = M365Client,
    exchange_factory: Callable[..., ExchangeClient] = ExchangeClient,
) -> Services:
    """Build the API clients and confirm each one can reach its service."""

    settings = config.connection
    app = _verify(
        "Microsoft Graph",
        lambda: build_msal_app(config.m365),
        settings.max_attempts,
        settings.retry_delay,
        sleep,
        transient=AUTHORITY_ERRORS,
    )

    graph = graph_factory(config.m365, app=app)
    organization = _verify(
        "Microsoft Graph",
        graph.check_connection,
        settings.max_attempts,
        settings.retry_delay,
        sleep,
    )
    logger.info("Connected to Microsoft Graph.")

    exchange: Optional[ExchangeClient] = None
    if config.m365.has_exo_credentials:
        exchange = exchange_factory(config.m365, app=app)
        _verify(
            "Exchange Online",
            exchange.check_connection,
            settings.max_attempts,
            settings.retry_delay,
            sleep,
        )
        logger.info("Connected to Exchange Online.")
    else:
        logger.warning("Exchange Online is not configured; mailbox steps will be skipped.")

    display_name = ""
    if isinstance(organization, dict):
        display_name = str(organization.get("displayName") or "")
    return Services(graph=graph, exchange=exchange, organization=display_name)


__all__ = ["ServiceConnectionError", "Services", "connect_services"]
