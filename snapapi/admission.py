"""Admission and accounting for render jobs.

One entry point, :meth:`AdmissionController.admit_and_run`, decides how a job
is funded (x402 payment or API key), whether it may take a render slot, and
how it is charged once the renderer succeeds. Every denial is raised before the
renderer is called; nothing is charged for a failed render.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .concurrency import ConcurrencyAdmitter
from .credentials import Credential, CredentialStore
from .errors import AdmissionError, AuthError, QuotaExceeded, RateLimited, RenderFailure
from .jobs import JobSpec, parse_job
from .micropayments import (
    PAYMENT_RESPONSE_HEADER,
    MicropaymentGate,
    PriceRequirement,
    VerifiedPayment,
    encode_header,
)
from .rate_limit import RateLimiter
from .renderer import RenderedDocument, Renderer

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    api_key: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class AdmissionResult:
    content: bytes
    media_type: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Funding:
    credential: Optional[Credential] = None
    payment: Optional[VerifiedPayment] = None


class ServiceStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "total_captures": 0,
            "screenshots": 0,
            "pdfs": 0,
            "md_conversions": 0,
            "errors": 0,
        }

    def record_success(self, job: JobSpec) -> None:
        with self._lock:
            self._counters["total_captures"] += 1
            if job.kind == "capture":
                bucket = "pdfs" if job.format == "pdf" else "screenshots"
                self._counters[bucket] += 1
            else:
                self._counters["md_conversions"] += 1

    def record_error(self) -> None:
        with self._lock:
            self._counters["errors"] += 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


class AdmissionController:
    def __init__(
        self,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        admitter: ConcurrencyAdmitter,
        gate: MicropaymentGate,
        renderer: Renderer,
    ) -> None:
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.admitter = admitter
        self.gate = gate
        self.renderer = renderer
        self.stats = ServiceStats()

    def quote_for_route(self, route: str) -> PriceRequirement:
        return self.gate.quote(route)

    async def admit_and_run(self, job: JobSpec, auth: AuthContext) -> AdmissionResult:
        funding = await self._fund(job.kind, auth)
        return await self._run_shielded(job, funding)

    async def submit(self, kind: str, params: Mapping[str, Any], auth: AuthContext) -> AdmissionResult:
        """Fund first, then validate ``params``: unfunded callers get the quote, not a 400."""
        funding = await self._fund(kind, auth)
        job = parse_job(kind, params)
        return await self._run_shielded(job, funding)

    async def render_unmetered(self, job: JobSpec) -> AdmissionResult:
        """Render a job that needs no funding and takes no slot (markdown to HTML)."""
        try:
            document = await self.renderer.render(job)
        except Exception as exc:
            logger.warning("Render failed for %s job: %s", job.kind, exc)
            raise RenderFailure(f"Conversion failed: {exc}") from exc
        return _result(document, {})

    async def _run_shielded(self, job: JobSpec, funding: Funding) -> AdmissionResult:
        # Shielded so a disconnecting caller does not abort the render midway;
        # the slot release and the charge happen inside the task either way.
        task = asyncio.ensure_future(self._run_admitted(job, funding))
        task.add_done_callback(_log_orphaned_failure)
        return await asyncio.shield(task)

    async def _fund(self, route: str, auth: AuthContext) -> Funding:
        # With micropayments off, a stray payment header must not shadow a valid key.
        if self.gate.has_payment(auth.headers) and (self.gate.enabled or not auth.api_key):
            return Funding(payment=await self.gate.verify(auth.headers, route))

        if auth.api_key:
            credential = self.credentials.check_quota(auth.api_key)
            if not self.rate_limiter.allow(auth.api_key):
                raise RateLimited(
                    f"Rate limit exceeded. Max {self.rate_limiter.max_calls} requests per minute.",
                    retry_after=self.rate_limiter.retry_after(auth.api_key),
                )
            return Funding(credential=credential)

        if self.gate.enabled:
            raise self.gate.payment_required(
                route,
                "Payment required. Include an X-API-Key header or an x402 payment.",
            )
        raise AuthError("Invalid or missing API key. Include X-API-Key header.")

    async def _run_admitted(self, job: JobSpec, funding: Funding) -> AdmissionResult:
        with self.admitter.slot():
            try:
                document = await self.renderer.render(job)
            except Exception as exc:
                self.stats.record_error()
                logger.warning("Render failed for %s job: %s", job.kind, exc)
                raise RenderFailure(f"Capture failed: {exc}") from exc

            self.stats.record_success(job)
            headers = await self._charge(funding)
        return _result(document, headers)

    async def _charge(self, funding: Funding) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if funding.credential is not None:
            key = funding.credential.key
            try:
                credential = self.credentials.record_usage(key)
            except (AuthError, QuotaExceeded) as exc:
                # The render already happened; usage lags rather than failing it.
                logger.warning("Usage for key %s... not recorded: %s", key[:12], exc)
                credential = self.credentials.lookup(key) or funding.credential
            except Exception as exc:
                logger.error("Usage for key %s... lost to a store failure: %s", key[:12], exc)
                credential = funding.credential
            headers["X-Captures-Used"] = str(credential.used_this_period)
            headers["X-Captures-Limit"] = str(credential.monthly_limit)
        elif funding.payment is not None:
            receipt = await self.gate.settle(funding.payment)
            if receipt is not None:
                headers[PAYMENT_RESPONSE_HEADER] = encode_header(receipt.as_header_payload())
        return headers


def _result(document: RenderedDocument, headers: Dict[str, str]) -> AdmissionResult:
    return AdmissionResult(content=document.content, media_type=document.media_type, headers=headers)


def _log_orphaned_failure(task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, AdmissionError):
        logger.error("Admitted job failed unexpectedly: %s", exc)


__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "AuthContext",
    "ServiceStats",
]
