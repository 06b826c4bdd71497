"""HTTP API for rendering jobs, subscriptions and service status."""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, field_validator

from .admission import AdmissionController, AuthContext
from .config import PLANS, SnapSettings
from .errors import AdmissionError, InvalidRequest
from .invoices import Invoice, InvoiceLedger
from .jobs import parse_job

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024
EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")

CORS_ALLOW_HEADERS = ["Content-Type", "X-API-Key", "PAYMENT-SIGNATURE", "X-PAYMENT"]
CORS_EXPOSE_HEADERS = [
    "X-Captures-Used",
    "X-Captures-Limit",
    "Retry-After",
    "PAYMENT-REQUIRED",
    "PAYMENT-RESPONSE",
]

API_DESCRIPTOR: Dict[str, Any] = {
    "service": "SnapAPI - Document Generation Suite",
    "version": "2.0.0",
    "description": "Screenshots, PDFs, and Markdown conversion API",
    "endpoints": {
        "GET /api/capture": {
            "description": "Capture a screenshot or PDF from a URL",
            "auth": "X-API-Key header, ?api_key= query param, or x402 payment",
            "params": {
                "url": "Target URL (required)",
                "format": "png (default), jpeg, or pdf",
                "width": "Viewport width (320-3840, default 1280)",
                "height": "Viewport height (200-2160, default 800)",
                "fullPage": "Capture full page (true/false)",
                "delay": "Wait ms after load (max 10000)",
                "quality": "JPEG quality (1-100, default 80)",
                "paperSize": "PDF paper size (A4, Letter, etc)",
                "landscape": "PDF landscape mode (true/false)",
                "waitUntil": "load, domcontentloaded, networkidle0 or networkidle2 (default)",
                "timeout": "Navigation timeout ms (5000-60000, default 30000)",
            },
        },
        "POST /api/md2pdf": {
            "description": "Convert Markdown to PDF",
            "auth": "X-API-Key header or x402 payment",
            "body": "JSON: { markdown, theme?, paperSize?, landscape?, fontSize?, margins? }",
        },
        "POST /api/md2png": {
            "description": "Convert Markdown to PNG or JPEG image",
            "auth": "X-API-Key header or x402 payment",
            "body": "JSON: { markdown, theme?, format?, width?, fontSize?, quality? }",
        },
        "POST /api/md2html": {
            "description": "Convert Markdown to styled HTML (no auth required)",
            "body": "JSON: { markdown, theme?, fontSize?, width? }",
        },
        "GET /api/quote/{route}": {"description": "x402 price quote for a paid route"},
        "GET /api/plans": {"description": "Subscription plans"},
        "POST /api/subscribe": {
            "description": "Create a USDC invoice for a plan",
            "body": "JSON: { plan, email? }",
        },
        "GET /api/subscribe/{invoice_id}": {"description": "Check an invoice; returns the API key once paid"},
        "GET /api/status": {"description": "Service health and stats"},
    },
}

# Query parameter names accepted by GET /api/capture, mapped to job fields.
CAPTURE_QUERY_FIELDS = {
    "url": "url",
    "format": "format",
    "width": "width",
    "height": "height",
    "fullPage": "full_page",
    "delay": "delay",
    "quality": "quality",
    "paperSize": "paper_size",
    "landscape": "landscape",
    "printBackground": "print_background",
    "waitUntil": "wait_until",
    "timeout": "timeout",
    "userAgent": "user_agent",
}

MARKDOWN_BODY_FIELDS = {
    "markdown": "markdown",
    "theme": "theme",
    "paperSize": "paper_size",
    "landscape": "landscape",
    "fontSize": "font_size",
    "margins": "margins",
    "format": "format",
    "width": "width",
    "quality": "quality",
}


class SubscribePayload(BaseModel):
    plan: str = Field(min_length=1, max_length=32)
    email: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: Optional[str]) -> Optional[str]:
        candidate = (value or "").strip()
        if not candidate:
            return None
        if not EMAIL_PATTERN.fullmatch(candidate):
            raise ValueError("email must look like name@domain.tld")
        return candidate.lower()


class InvoiceView(BaseModel):
    invoice_id: str
    plan: str
    plan_name: str
    status: str
    amount: float
    amount_raw: int
    token: str
    network: str
    wallet: str
    created_at: str
    expires_at: str
    tx_hash: Optional[str] = None
    paid_at: Optional[str] = None
    api_key: Optional[str] = None
    monthly_limit: int
    instructions: str


class PlanView(BaseModel):
    plan: str
    name: str
    price: str
    limit: int
    period: str


class PlansResponse(BaseModel):
    plans: List[PlanView]


class CredentialView(BaseModel):
    key: str
    name: str
    tier: str
    monthly_limit: int
    used_this_period: int
    period_anchor: str
    created_at: str
    invoice_id: Optional[str] = None


class CredentialListResponse(BaseModel):
    credentials: List[CredentialView]


class InvoiceListResponse(BaseModel):
    invoices: List[InvoiceView]


def invoice_view(invoice: Invoice) -> InvoiceView:
    plan = PLANS.get(invoice.plan)
    if invoice.status == "paid":
        instructions = "Payment confirmed. Use the api_key in the X-API-Key header."
    elif invoice.status == "expired":
        instructions = "Invoice expired. Create a new subscription to get a fresh quote."
    else:
        instructions = (
            f"Send exactly {invoice.amount:.2f} {invoice.token} on {invoice.network} to "
            f"{invoice.wallet} before {invoice.expires_at}. The exact amount identifies your invoice."
        )
    return InvoiceView(
        invoice_id=invoice.id,
        plan=invoice.plan,
        plan_name=plan.name if plan else invoice.plan,
        status=invoice.status,
        amount=invoice.amount,
        amount_raw=invoice.amount_raw,
        token=invoice.token,
        network=invoice.network,
        wallet=invoice.wallet,
        created_at=invoice.created_at,
        expires_at=invoice.expires_at,
        tx_hash=invoice.tx_hash,
        paid_at=invoice.paid_at,
        api_key=invoice.api_key,
        monthly_limit=plan.limit if plan else 0,
        instructions=instructions,
    )


def create_app(
    controller: AdmissionController,
    ledger: InvoiceLedger,
    settings: SnapSettings,
) -> FastAPI:
    app = FastAPI(title="SnapAPI", version="2.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
        expose_headers=CORS_EXPOSE_HEADERS,
    )

    def _provided_api_key(request: Request) -> Optional[str]:
        key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if key:
            candidate = key.strip()
            if candidate:
                return candidate
        return None

    def auth_context(request: Request) -> AuthContext:
        return AuthContext(api_key=_provided_api_key(request), headers=request.headers)

    async def require_admin(request: Request) -> None:
        token = settings.api_admin_token
        if not token:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
        if request.headers.get("X-Admin-Token") != token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")

    async def read_json_body(request: Request) -> Dict[str, Any]:
        raw = await request.body()
        if len(raw) > MAX_BODY_BYTES:
            raise InvalidRequest("Body too large (max 1MB)")
        try:
            body = json.loads(raw or b"{}")
        except ValueError as exc:
            raise InvalidRequest(f"Invalid JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise InvalidRequest("Invalid JSON body: expected an object")
        return body

    def markdown_fields(body: Dict[str, Any], unused: tuple) -> Dict[str, Any]:
        fields = {MARKDOWN_BODY_FIELDS[k]: v for k, v in body.items() if k in MARKDOWN_BODY_FIELDS}
        for name in unused:
            fields.pop(name, None)
        return fields

    def job_response(result, filename: Optional[str] = None) -> Response:
        headers = dict(result.headers)
        if filename:
            headers["Content-Disposition"] = f'inline; filename="{filename}"'
        return Response(content=result.content, media_type=result.media_type, headers=headers)

    @app.exception_handler(AdmissionError)
    async def admission_error_handler(_: Request, exc: AdmissionError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers or None)

    @app.get("/api")
    async def describe_api() -> Dict[str, Any]:
        return API_DESCRIPTOR

    @app.get("/api/capture")
    async def capture(request: Request) -> Response:
        auth = auth_context(request)
        params = {
            field: request.query_params.get(name)
            for name, field in CAPTURE_QUERY_FIELDS.items()
            if request.query_params.get(name) is not None
        }
        result = await controller.submit("capture", params, auth)
        return job_response(result)

    @app.post("/api/md2pdf")
    async def markdown_to_pdf(request: Request) -> Response:
        auth = auth_context(request)
        fields = markdown_fields(await read_json_body(request), ("format", "width", "quality"))
        result = await controller.submit("md2pdf", fields, auth)
        return job_response(result, "document.pdf")

    @app.post("/api/md2png")
    async def markdown_to_image(request: Request) -> Response:
        auth = auth_context(request)
        fields = markdown_fields(await read_json_body(request), ("paper_size", "landscape", "margins"))
        result = await controller.submit("md2png", fields, auth)
        extension = "jpeg" if result.media_type == "image/jpeg" else "png"
        return job_response(result, f"document.{extension}")

    # Lightweight and unmetered: no credential, no quota, no render slot.
    @app.post("/api/md2html")
    async def markdown_to_html(request: Request) -> Response:
        fields = markdown_fields(
            await read_json_body(request), ("paper_size", "landscape", "margins", "format", "quality")
        )
        job = parse_job("md2html", fields)
        result = await controller.render_unmetered(job)
        return Response(content=result.content, media_type="text/html")

    @app.get("/api/quote/{route}")
    async def quote(route: str) -> Dict[str, Any]:
        requirement = controller.quote_for_route(route)
        return {
            "route": route,
            "price": f"${requirement.price_usd}",
            "resource": requirement.resource_info(),
            "accepts": [requirement.to_wire()],
        }

    @app.get("/api/plans", response_model=PlansResponse)
    async def list_plans() -> PlansResponse:
        return PlansResponse(
            plans=[
                PlanView(plan=key, name=plan.name, price=f"{plan.price:.2f}", limit=plan.limit, period=plan.period)
                for key, plan in PLANS.items()
            ]
        )

    @app.post("/api/subscribe", response_model=InvoiceView)
    async def subscribe(payload: SubscribePayload) -> InvoiceView:
        invoice = ledger.create_invoice(payload.plan, payload.email)
        return invoice_view(invoice)

    # Plain def: the chain lookup blocks, so FastAPI runs this in its threadpool.
    @app.get("/api/subscribe/{invoice_id}", response_model=InvoiceView)
    def check_subscription(invoice_id: str) -> InvoiceView:
        invoice = ledger.check_invoice(invoice_id)
        if invoice is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
        return invoice_view(invoice)

    @app.get("/api/status")
    async def service_status() -> Dict[str, Any]:
        return {
            "service": "screenshot-api",
            "status": "ok",
            "stats": controller.stats.snapshot(),
            "active_tasks": controller.admitter.active,
            "max_concurrent": controller.admitter.max_concurrent,
            "x402_enabled": controller.gate.enabled,
            "pending_invoices": len(ledger.pending_ids()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/admin/invoices", response_model=InvoiceListResponse)
    async def list_invoices(_: Any = Depends(require_admin)) -> InvoiceListResponse:
        invoices = sorted(ledger.list_invoices(), key=lambda item: item.created_at, reverse=True)
        return InvoiceListResponse(invoices=[invoice_view(invoice) for invoice in invoices])

    @app.get("/api/admin/credentials", response_model=CredentialListResponse)
    async def list_credentials(_: Any = Depends(require_admin)) -> CredentialListResponse:
        return CredentialListResponse(
            credentials=[CredentialView(**credential.as_dict()) for credential in controller.credentials.all()]
        )

    return app


def run_api(app: FastAPI, settings: SnapSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["create_app", "invoice_view", "run_api"]
