import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from snapapi.credentials import CredentialStore, next_period_start
from snapapi.errors import AuthError, QuotaExceeded


class FakeClock:
    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


def test_issue_persists_and_lookup_round_trips(tmp_path: Path):
    path = tmp_path / "api-keys.json"
    store = CredentialStore(path)

    credential = store.issue(tier="pro", limit=1000, owner_hint="alice@example.com", invoice_id="abcd")

    assert credential.key.startswith("pro_")
    assert len(credential.key) == len("pro_") + 32
    assert credential.used_this_period == 0

    raw = json.loads(path.read_text())
    assert raw[credential.key]["limit"] == 1000
    assert raw[credential.key]["invoice_id"] == "abcd"

    reloaded = CredentialStore(path)
    found = reloaded.lookup(credential.key)
    assert found is not None
    assert found.tier == "pro"
    assert found.name == "alice@example.com"
    assert reloaded.lookup("missing") is None


def test_record_usage_stops_at_limit_without_mutation(tmp_path: Path):
    store = CredentialStore(tmp_path / "api-keys.json")
    credential = store.issue(tier="free", limit=2)

    assert store.record_usage(credential.key).used_this_period == 1
    assert store.record_usage(credential.key).used_this_period == 2
    with pytest.raises(QuotaExceeded):
        store.record_usage(credential.key)

    assert store.lookup(credential.key).used_this_period == 2


def test_check_quota_rejects_unknown_and_exhausted_keys(tmp_path: Path):
    store = CredentialStore(tmp_path / "api-keys.json")
    credential = store.issue(tier="free", limit=1)

    with pytest.raises(AuthError):
        store.check_quota(None)
    with pytest.raises(AuthError):
        store.check_quota("demo_nope")

    assert store.check_quota(credential.key).key == credential.key
    # Checking never consumes quota.
    assert store.lookup(credential.key).used_this_period == 0

    store.record_usage(credential.key)
    with pytest.raises(QuotaExceeded) as excinfo:
        store.check_quota(credential.key)
    assert excinfo.value.status_code == 429
    assert excinfo.value.extra["limit"] == 1


def test_concurrent_usage_never_exceeds_limit(tmp_path: Path):
    store = CredentialStore(tmp_path / "api-keys.json")
    credential = store.issue(tier="free", limit=5)
    outcomes = []
    outcomes_lock = threading.Lock()
    barrier = threading.Barrier(20)

    def worker():
        barrier.wait()
        try:
            store.record_usage(credential.key)
            result = "ok"
        except QuotaExceeded:
            result = "denied"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 5
    assert outcomes.count("denied") == 15
    assert store.lookup(credential.key).used_this_period == 5


def test_period_rollover_resets_usage(tmp_path: Path):
    clock = FakeClock(datetime(2026, 9, 30, 23, 59, tzinfo=timezone.utc))
    store = CredentialStore(tmp_path / "api-keys.json", clock=clock)
    credential = store.issue(tier="free", limit=1)
    store.record_usage(credential.key)
    with pytest.raises(QuotaExceeded):
        store.check_quota(credential.key)

    clock.moment = datetime(2026, 10, 1, 0, 0, 1, tzinfo=timezone.utc)

    assert store.check_quota(credential.key).used_this_period == 0
    updated = store.record_usage(credential.key)
    assert updated.used_this_period == 1
    assert updated.period_anchor == "2026-10"


def test_ensure_demo_key_only_on_empty_store(tmp_path: Path):
    store = CredentialStore(tmp_path / "api-keys.json")

    demo = store.ensure_demo_key(limit=100)
    assert demo is not None
    assert demo.key.startswith("demo_")
    assert demo.tier == "free"
    assert demo.monthly_limit == 100

    assert store.ensure_demo_key() is None
    assert len(store.all()) == 1


def test_quota_denial_carries_reset_time(tmp_path: Path):
    clock = FakeClock(datetime(2026, 12, 15, 9, 30, tzinfo=timezone.utc))
    store = CredentialStore(tmp_path / "api-keys.json", clock=clock)
    credential = store.issue(tier="free", limit=1)
    store.record_usage(credential.key)

    with pytest.raises(QuotaExceeded) as checked:
        store.check_quota(credential.key)
    with pytest.raises(QuotaExceeded) as recorded:
        store.record_usage(credential.key)

    assert checked.value.to_body()["resets_at"] == "2027-01-01T00:00:00Z"
    assert recorded.value.extra["resets_at"] == "2027-01-01T00:00:00Z"
    assert next_period_start(datetime(2026, 10, 16, tzinfo=timezone.utc)) == "2026-11-01T00:00:00Z"


def test_failed_write_does_not_consume_quota(tmp_path: Path, monkeypatch):
    store = CredentialStore(tmp_path / "api-keys.json")
    credential = store.issue(tier="free", limit=1)

    def disk_full():
        raise OSError("disk full")

    monkeypatch.setattr(store, "_persist", disk_full)
    with pytest.raises(OSError):
        store.record_usage(credential.key)
    monkeypatch.undo()

    assert store.lookup(credential.key).used_this_period == 0
    assert store.record_usage(credential.key).used_this_period == 1
