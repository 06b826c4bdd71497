import pytest

from snapapi.concurrency import ConcurrencyAdmitter
from snapapi.errors import Busy


def test_fourth_admission_is_busy_until_release():
    admitter = ConcurrencyAdmitter(max_concurrent=3)
    tokens = [admitter.try_admit() for _ in range(3)]

    with pytest.raises(Busy) as excinfo:
        admitter.try_admit()
    assert excinfo.value.status_code == 503
    assert excinfo.value.headers["Retry-After"] == "5"

    admitter.release(tokens[0])
    token = admitter.try_admit()
    assert admitter.active == 3

    for item in (token, *tokens[1:]):
        admitter.release(item)
    assert admitter.active == 0


def test_double_release_is_ignored():
    admitter = ConcurrencyAdmitter(max_concurrent=2)
    first = admitter.try_admit()
    admitter.try_admit()

    admitter.release(first)
    admitter.release(first)

    assert admitter.active == 1


def test_slot_releases_when_job_raises():
    admitter = ConcurrencyAdmitter(max_concurrent=1)

    for _ in range(5):
        with pytest.raises(RuntimeError):
            with admitter.slot():
                assert admitter.active == 1
                raise RuntimeError("renderer exploded")

    assert admitter.active == 0
    with admitter.slot():
        pass
    assert admitter.active == 0


def test_rejects_non_positive_budget():
    with pytest.raises(ValueError):
        ConcurrencyAdmitter(max_concurrent=0)
