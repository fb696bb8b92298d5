from __future__ import annotations

import os

from sikupi.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from sikupi.integrations.payments.base import PaymentsProvider
from sikupi.integrations.payments.midtrans_provider import MidtransPaymentsProvider
from sikupi.integrations.payments.mock_provider import MockPaymentsProvider


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _is_production(config) -> bool:
    value = None
    if config is not None:
        value = config.get("SIKUPI_ENV")
    env = (value or os.getenv("SIKUPI_ENV") or "dev").strip().lower()
    return env in ("prod", "production")


def _provider_name(config) -> str:
    value = None
    if config is not None:
        value = config.get("PAYMENTS_PROVIDER")
    return (value or os.getenv("PAYMENTS_PROVIDER") or "mock").strip().lower()


def build_payments_provider(config=None) -> PaymentsProvider:
    provider = _provider_name(config)

    if provider in ("disabled", "off", "none"):
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")

    if provider == "mock":
        # The mock provider trusts notification bodies as posted.
        if _is_production(config):
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:mock payments provider is not allowed in production")
        return MockPaymentsProvider()

    if provider != "midtrans":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    server_key = (os.getenv("MIDTRANS_SERVER_KEY") or "").strip()
    if not server_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing MIDTRANS_SERVER_KEY")

    return MidtransPaymentsProvider(
        server_key=server_key,
        is_production=_env_bool("MIDTRANS_IS_PRODUCTION", False),
        require_signature=_env_bool("MIDTRANS_REQUIRE_SIGNATURE", False),
    )


def payment_health(config=None) -> dict:
    provider = _provider_name(config)
    missing = []
    if provider == "midtrans" and not (os.getenv("MIDTRANS_SERVER_KEY") or "").strip():
        missing.append("MIDTRANS_SERVER_KEY")
    if provider == "mock" and _is_production(config):
        missing.append("PAYMENTS_PROVIDER")
    if provider in ("disabled", "off", "none"):
        status = "disabled"
    elif provider not in ("mock", "midtrans") or missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "provider": provider,
        "production": _env_bool("MIDTRANS_IS_PRODUCTION", False) if provider == "midtrans" else False,
        "missing": missing,
    }
