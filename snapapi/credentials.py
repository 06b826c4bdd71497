"""JSON-backed API key store with monthly quota accounting."""
from __future__ import annotations

import json
import logging
import secrets
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import AuthError, QuotaExceeded

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def period_tag(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


def next_period_start(moment: datetime) -> str:
    """First instant of the next UTC calendar month, when monthly usage resets."""
    moment = moment.astimezone(timezone.utc)
    if moment.month == 12:
        start = datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        start = datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)
    return start.isoformat().replace("+00:00", "Z")


@dataclass
class Credential:
    key: str
    name: str
    tier: str
    monthly_limit: int
    used_this_period: int
    period_anchor: str
    created_at: str
    invoice_id: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(self.monthly_limit - self.used_this_period, 0)

    @classmethod
    def from_record(cls, key: str, record: Dict[str, Any]) -> "Credential":
        return cls(
            key=key,
            name=str(record.get("name") or ""),
            tier=str(record.get("tier") or "free"),
            monthly_limit=int(record.get("limit", 0)),
            used_this_period=int(record.get("used", 0)),
            period_anchor=str(record.get("resetMonth") or ""),
            created_at=str(record.get("created") or ""),
            invoice_id=record.get("invoice_id"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CredentialStore:
    """Persists API keys keyed by token; every mutation is written through."""

    def __init__(self, path: Path, clock: Callable[[], datetime] = utcnow) -> None:
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                logger.error("Credential file %s is not valid JSON; starting empty", self.path)
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

    def _normalize_period(self, record: Dict[str, Any]) -> bool:
        """Reset usage when the calendar month rolled over. Caller holds the lock."""
        current = period_tag(self._clock())
        if record.get("resetMonth") == current:
            return False
        record["used"] = 0
        record["resetMonth"] = current
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def lookup(self, key: str) -> Optional[Credential]:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if self._normalize_period(record):
                self._persist()
            return Credential.from_record(key, record)

    def check_quota(self, key: Optional[str]) -> Credential:
        """Admission-time check: the key exists and has quota left. Consumes nothing."""
        if not key:
            raise AuthError("Invalid or missing API key. Include X-API-Key header.")
        credential = self.lookup(key)
        if credential is None:
            raise AuthError("Invalid or missing API key. Include X-API-Key header.")
        if credential.used_this_period >= credential.monthly_limit:
            raise QuotaExceeded(
                f"Monthly limit reached ({credential.monthly_limit}). Upgrade your plan.",
                extra={
                    "limit": credential.monthly_limit,
                    "used": credential.used_this_period,
                    "resets_at": next_period_start(self._clock()),
                },
            )
        return credential

    def record_usage(self, key: str) -> Credential:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise AuthError("Invalid or missing API key. Include X-API-Key header.")
            self._normalize_period(record)
            used = int(record.get("used", 0))
            limit = int(record.get("limit", 0))
            if used >= limit:
                raise QuotaExceeded(
                    f"Monthly limit reached ({limit}). Upgrade your plan.",
                    extra={"limit": limit, "used": used, "resets_at": next_period_start(self._clock())},
                )
            record["used"] = used + 1
            try:
                self._persist()
            except Exception:
                record["used"] = used
                raise
            return Credential.from_record(key, record)

    def issue(
        self,
        *,
        tier: str,
        limit: int,
        owner_hint: Optional[str] = None,
        prefix: Optional[str] = None,
        invoice_id: Optional[str] = None,
    ) -> Credential:
        if limit <= 0:
            raise ValueError("limit must be positive")
        now = self._clock()
        key = f"{prefix or tier}_{secrets.token_hex(16)}"
        record: Dict[str, Any] = {
            "name": owner_hint or tier,
            "tier": tier,
            "limit": int(limit),
            "used": 0,
            "resetMonth": period_tag(now),
            "created": now.astimezone(timezone.utc).isoformat(),
        }
        if invoice_id:
            record["invoice_id"] = invoice_id
        with self._lock:
            while key in self._records:
                key = f"{prefix or tier}_{secrets.token_hex(16)}"
            self._records[key] = record
            self._persist()
        logger.info("Issued %s credential %s... (limit=%s)", tier, key[:12], limit)
        return Credential.from_record(key, record)

    def ensure_demo_key(self, limit: int = 100) -> Optional[Credential]:
        """Mint a free-tier demo key when the store holds no keys at all."""
        if len(self) > 0:
            return None
        credential = self.issue(tier="free", limit=limit, owner_hint="demo", prefix="demo")
        logger.info("Demo API key created: %s", credential.key)
        return credential

    def all(self) -> List[Credential]:
        with self._lock:
            return [Credential.from_record(key, record) for key, record in self._records.items()]


__all__ = ["Credential", "CredentialStore", "next_period_start", "period_tag"]
