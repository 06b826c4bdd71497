"""Global in-flight render budget."""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from .errors import Busy

logger = logging.getLogger(__name__)


@dataclass
class AdmissionToken:
    token_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    released: bool = False


class ConcurrencyAdmitter:
    """Fail-fast counter bounded by ``max_concurrent``. Never queues."""

    def __init__(self, max_concurrent: int = 3) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        self.max_concurrent = max_concurrent
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def try_admit(self) -> AdmissionToken:
        with self._lock:
            if self._active >= self.max_concurrent:
                raise Busy()
            self._active += 1
            return AdmissionToken()

    def release(self, token: AdmissionToken) -> None:
        with self._lock:
            if token.released:
                logger.warning("Admission token %s released twice; ignoring", token.token_id)
                return
            token.released = True
            self._active -= 1

    @contextmanager
    def slot(self) -> Iterator[AdmissionToken]:
        token = self.try_admit()
        try:
            yield token
        finally:
            self.release(token)


__all__ = ["AdmissionToken", "ConcurrencyAdmitter"]
