"""CLI entrypoint for the rendering API."""
from __future__ import annotations

import logging
import sys
from datetime import timedelta
from typing import Optional

from .admission import AdmissionController
from .api import create_app, run_api
from .chain import Erc20TransferQuery
from .concurrency import ConcurrencyAdmitter
from .config import SnapSettings, load_settings
from .credentials import CredentialStore
from .facilitator import HTTPFacilitatorClient
from .invoices import InvoiceLedger, InvoiceReconciler
from .micropayments import MicropaymentGate
from .rate_limit import RateLimiter
from .renderer import RemoteRenderer


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_gate(settings: SnapSettings) -> MicropaymentGate:
    facilitator: Optional[HTTPFacilitatorClient] = None
    if settings.x402_enabled:
        facilitator = HTTPFacilitatorClient(
            settings.x402_facilitator_url,
            timeout_seconds=settings.x402_facilitator_timeout_seconds,
        )
    return MicropaymentGate(
        facilitator,
        network=settings.x402_network,
        asset=settings.x402_asset_address,
        pay_to=str(settings.x402_pay_to),
        max_timeout_seconds=settings.x402_max_timeout_seconds,
    )


def main() -> None:
    configure_logging()
    logger = logging.getLogger(__name__)
    settings = load_settings()

    logger.info("Starting rendering API")

    credentials = CredentialStore(settings.credentials_path)
    credentials.ensure_demo_key(limit=settings.free_tier_limit)
    logger.info("API keys: %s configured", len(credentials))

    chain = Erc20TransferQuery(settings.polygon_rpc_url, settings.usdc_contract_address)
    ledger = InvoiceLedger(
        settings.invoices_path,
        credentials,
        chain,
        wallet_address=settings.wallet_address,
        ttl=timedelta(seconds=settings.invoice_ttl_seconds),
        lookback_blocks=settings.invoice_lookback_blocks,
    )
    reconciler = InvoiceReconciler(ledger, interval_seconds=settings.invoice_poll_interval_seconds)

    gate = build_gate(settings)
    if gate.enabled:
        logger.info(
            "[x402] Accepting USDC on %s to %s via %s",
            settings.x402_network,
            gate.pay_to,
            settings.x402_facilitator_url,
        )
    else:
        logger.info("[x402] Micropayments disabled")

    controller = AdmissionController(
        credentials=credentials,
        rate_limiter=RateLimiter(
            max_calls=settings.rate_limit_per_minute,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        admitter=ConcurrencyAdmitter(settings.max_concurrent),
        gate=gate,
        renderer=RemoteRenderer(settings.renderer_url, timeout_seconds=settings.renderer_timeout_seconds),
    )

    app = create_app(controller, ledger, settings)
    reconciler.start()
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
    try:
        run_api(app, settings)
    finally:
        reconciler.stop(timeout=5)


if __name__ == "__main__":
    main()
