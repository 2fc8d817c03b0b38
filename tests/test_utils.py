import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from permbench.errors import TransientStorageError, ValidationError
from permbench.flat import FlatEngine
from permbench.rebac import RelationshipChecker, RelationshipStore, TupleEngine
from permbench.utils import chunked, retry_transient, storage_errors


def locked(*args, **kwargs):
    raise OperationalError("INSERT", {}, Exception("database is locked"))


class Flaky:
    def __init__(self, failures, error=TransientStorageError):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("database is locked")
        return "done"


def test_retry_transient_recovers_after_transient_failures():
    flaky = Flaky(failures=2)

    assert retry_transient(attempts=3, backoff_seconds=0)(flaky)() == "done"
    assert flaky.calls == 3


def test_retry_transient_gives_up_after_the_last_attempt():
    flaky = Flaky(failures=5)

    with pytest.raises(TransientStorageError):
        retry_transient(attempts=3, backoff_seconds=0)(flaky)()
    assert flaky.calls == 3


def test_retry_transient_does_not_retry_other_errors():
    flaky = Flaky(failures=1, error=ValidationError)

    with pytest.raises(ValidationError):
        retry_transient(attempts=3, backoff_seconds=0)(flaky)()
    assert flaky.calls == 1


def test_storage_errors_translates_driver_failures():
    with pytest.raises(TransientStorageError):
        with storage_errors():
            locked()


def test_tuple_writes_are_retried(loaded_org, session_factory, monkeypatch):
    calls = []

    def write(self, key, commit=True):
        calls.append(key)
        locked()

    monkeypatch.setattr(RelationshipStore, "write", write)
    engine = TupleEngine(session_factory, retry_attempts=3, retry_backoff_seconds=0)

    with pytest.raises(TransientStorageError):
        engine.grant(3, 1)
    assert len(calls) == 3


def test_tuple_checks_are_not_retried(loaded_org, session_factory, monkeypatch):
    calls = []

    def check(self, *args):
        calls.append(args)
        locked()

    monkeypatch.setattr(RelationshipChecker, "check", check)
    engine = TupleEngine(session_factory, retry_attempts=3, retry_backoff_seconds=0)

    with pytest.raises(TransientStorageError):
        engine.check(1, 1)
    assert len(calls) == 1


def test_flat_checks_are_not_retried(loaded_org, session_factory, monkeypatch):
    calls = []

    def scalar(self, *args, **kwargs):
        calls.append(args)
        locked()

    engine = FlatEngine(session_factory, retry_attempts=3, retry_backoff_seconds=0)
    monkeypatch.setattr(Session, "scalar", scalar)

    with pytest.raises(TransientStorageError):
        engine.check(1, 1)
    assert len(calls) == 1


def test_chunked():
    assert list(chunked(range(5), 2)) == [[0, 1], [2, 3], [4]]
    assert list(chunked([], 3)) == []
