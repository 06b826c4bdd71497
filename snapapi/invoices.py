"""Subscription invoices paid in USDC and reconciled from on-chain transfers.

Every invoice quotes the plan price plus a cent offset derived from its id, so
several pending invoices paid to the same wallet can be told apart by amount
alone. A transfer within ``AMOUNT_TOLERANCE_RAW`` atomic units of the quoted
amount pays the invoice and mints an API key for the plan.

Amount-only matching has a known blind spot: two pending invoices for the same
plan whose offsets collide (about 1 in 99) are indistinguishable, and one
transfer can satisfy both. Only reuse of the exact same transaction hash is
refused here.
"""
from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .chain import ChainQuery, ChainQueryError, Transfer
from .config import ATOMIC_PER_USDC, PLANS, Plan
from .credentials import CredentialStore
from .errors import InvalidRequest

logger = logging.getLogger(__name__)

INVOICE_TTL = timedelta(hours=1)
# ~2.5 hours of Polygon blocks, comfortably longer than the invoice TTL.
LOOKBACK_BLOCKS = 5000
# 0.001 USDC
AMOUNT_TOLERANCE_RAW = 1000

STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    candidate = value
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    return datetime.fromisoformat(candidate).astimezone(timezone.utc)


def fingerprint_offset(invoice_id: str) -> Decimal:
    """Cent offset in [0.01, 0.99] taken from the first 16 bits of the id."""
    return Decimal(int(invoice_id[:4], 16) % 99 + 1) / Decimal(100)


def quote_amount(price: Decimal, invoice_id: str) -> Decimal:
    amount = price + fingerprint_offset(invoice_id)
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_atomic_units(amount: Decimal) -> int:
    return int((amount * ATOMIC_PER_USDC).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass
class Invoice:
    id: str
    plan: str
    email: Optional[str]
    amount: float
    amount_raw: int
    status: str
    wallet: str
    network: str
    token: str
    created_at: str
    expires_at: str
    tx_hash: Optional[str] = None
    paid_at: Optional[str] = None
    api_key: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Invoice":
        return cls(
            id=str(record["id"]),
            plan=str(record["plan"]),
            email=record.get("email"),
            amount=float(record["amount"]),
            amount_raw=int(record["amount_raw"]),
            status=str(record.get("status") or STATUS_PENDING),
            wallet=str(record.get("wallet") or ""),
            network=str(record.get("network") or "Polygon"),
            token=str(record.get("token") or "USDC"),
            created_at=str(record["created_at"]),
            expires_at=str(record["expires_at"]),
            tx_hash=record.get("tx_hash"),
            paid_at=record.get("paid_at"),
            api_key=record.get("api_key"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InvoiceLedger:
    """Persists invoices and applies on-chain matches to them."""

    def __init__(
        self,
        path: Path,
        credentials: CredentialStore,
        chain: ChainQuery,
        *,
        wallet_address: str,
        plans: Optional[Mapping[str, Plan]] = None,
        ttl: timedelta = INVOICE_TTL,
        lookback_blocks: int = LOOKBACK_BLOCKS,
        tolerance_raw: int = AMOUNT_TOLERANCE_RAW,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.path = path
        self.credentials = credentials
        self.chain = chain
        self.wallet_address = wallet_address
        self.plans: Mapping[str, Plan] = plans if plans is not None else PLANS
        self.ttl = ttl
        self.lookback_blocks = lookback_blocks
        self.tolerance_raw = tolerance_raw
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                logger.error("Invoice file %s is not valid JSON; starting empty", self.path)
                data = {}
        if isinstance(data, dict):
            self._records = {str(key): dict(value) for key, value in data.items() if isinstance(value, dict)}
        else:
            self._records = {}

    def _persist(self) -> None:
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(self._records, handle, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def _consumed_tx_hashes(self) -> set[str]:
        return {
            str(record["tx_hash"]).lower()
            for record in self._records.values()
            if record.get("tx_hash")
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def create_invoice(self, plan: str, email: Optional[str] = None) -> Invoice:
        plan_data = self.plans.get(plan)
        if plan_data is None:
            raise InvalidRequest(
                f"Unknown plan: {plan}",
                extra={"plans": sorted(self.plans)},
            )

        now = self._clock()
        with self._lock:
            invoice_id = secrets.token_hex(8)
            while invoice_id in self._records:
                invoice_id = secrets.token_hex(8)
            amount = quote_amount(plan_data.price, invoice_id)
            record: Dict[str, Any] = {
                "id": invoice_id,
                "plan": plan,
                "email": email or None,
                "amount": float(amount),
                "amount_raw": to_atomic_units(amount),
                "status": STATUS_PENDING,
                "wallet": self.wallet_address,
                "network": "Polygon",
                "token": "USDC",
                "created_at": isoformat(now),
                "expires_at": isoformat(now + self.ttl),
                "tx_hash": None,
                "paid_at": None,
                "api_key": None,
            }
            self._records[invoice_id] = record
            self._persist()
        logger.info("Created invoice %s plan=%s amount=%s USDC", invoice_id, plan, amount)
        return Invoice.from_record(record)

    def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            record = self._records.get(invoice_id)
            return Invoice.from_record(record) if record is not None else None

    def list_invoices(self) -> List[Invoice]:
        with self._lock:
            return [Invoice.from_record(record) for record in self._records.values()]

    def pending_ids(self) -> List[str]:
        with self._lock:
            return [key for key, record in self._records.items() if record.get("status") == STATUS_PENDING]

    def check_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            record = self._records.get(invoice_id)
            if record is None:
                return None
            if record.get("status") != STATUS_PENDING:
                return Invoice.from_record(record)
            if self._clock() > parse_iso8601(record["expires_at"]):
                record["status"] = STATUS_EXPIRED
                self._persist()
                logger.info("Invoice %s expired without payment", invoice_id)
                return Invoice.from_record(record)
            amount_raw = int(record["amount_raw"])

        # The chain query may take seconds and must not hold the ledger lock.
        try:
            transfers = self.chain.get_recent_transfers(self.wallet_address, self.lookback_blocks)
        except ChainQueryError as exc:
            logger.warning("Payment check for invoice %s failed: %s", invoice_id, exc)
            return self.get(invoice_id)

        with self._lock:
            record = self._records[invoice_id]
            if record.get("status") != STATUS_PENDING:
                return Invoice.from_record(record)
            match = self._first_match(amount_raw, transfers)
            if match is None:
                return Invoice.from_record(record)
            credential = self.credentials.issue(
                tier=record["plan"],
                limit=self.plans[record["plan"]].limit,
                owner_hint=record.get("email"),
                prefix=record["plan"],
                invoice_id=invoice_id,
            )
            record["status"] = STATUS_PAID
            record["tx_hash"] = match.tx_hash
            record["paid_at"] = isoformat(self._clock())
            record["api_key"] = credential.key
            self._persist()
            paid = Invoice.from_record(record)
        logger.info("Invoice %s paid by tx %s", invoice_id, match.tx_hash)
        return paid

    def _first_match(self, amount_raw: int, transfers: List[Transfer]) -> Optional[Transfer]:
        consumed = self._consumed_tx_hashes()
        for transfer in transfers:
            if abs(transfer.amount_raw - amount_raw) >= self.tolerance_raw:
                continue
            if transfer.tx_hash.lower() in consumed:
                continue
            return transfer
        return None

    def reconcile(self) -> int:
        """Check every pending invoice once. Returns how many were paid."""
        paid = 0
        for invoice_id in self.pending_ids():
            try:
                invoice = self.check_invoice(invoice_id)
            except Exception as exc:  # pragma: no cover
                logger.exception("Reconciliation failed for invoice %s: %s", invoice_id, exc)
                continue
            if invoice is not None and invoice.status == STATUS_PAID:
                paid += 1
        return paid


class InvoiceReconciler:
    """Background timer that reconciles pending invoices."""

    def __init__(self, ledger: InvoiceLedger, interval_seconds: float = 30) -> None:
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        pending = len(self.ledger.pending_ids())
        if pending == 0:
            return 0
        logger.info("Checking %s pending invoice(s)...", pending)
        return self.ledger.reconcile()

    def run_forever(self) -> None:
        """Blocking loop that reconciles every configured interval until stopped."""
        logger.info("Payment poller started (every %ss)", self.interval_seconds)
        while not self._stop.is_set():
            start = time.monotonic()
            try:
                self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Unexpected error in reconciliation tick: %s", exc)
            elapsed = time.monotonic() - start
            self._stop.wait(max(self.interval_seconds - elapsed, 0))
        logger.info("Payment poller stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="invoice-reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


__all__ = [
    "AMOUNT_TOLERANCE_RAW",
    "Invoice",
    "InvoiceLedger",
    "InvoiceReconciler",
    "fingerprint_offset",
    "quote_amount",
    "to_atomic_units",
]
