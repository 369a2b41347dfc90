"""
Shared pytest fixtures for the session engine tests.

The engine is exercised against a scripted radio adapter: every adapter call
is recorded and hands back a `concurrent.futures.Future` the test completes
by hand, so the order in which the radio answers is fully under test control.
"""

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from blesession.ble import BLECentralEngine, ConnectionState, RetryPolicy

from test_ble_fixtures import EventRecorder, FakeRadioAdapter, connect_peripheral


@pytest.fixture
def adapter():
    """A fresh scripted radio adapter."""
    return FakeRadioAdapter()


@pytest.fixture
def engine(adapter):
    """
    An engine bound to the scripted adapter, closed after the test.

    Retries are immediate so that `retry()` hits the adapter synchronously.
    """
    eng = BLECentralEngine(
        adapter,
        connect_timeout=5.0,
        disconnect_timeout=1.0,
        retry_policy_factory=RetryPolicy.immediate,
    )
    yield eng
    eng.close()


@pytest.fixture
def recorder(engine):
    """Records every event the engine publishes."""
    rec = EventRecorder()
    engine.subscribe(rec)
    return rec


@pytest.fixture
def connected(engine, adapter, recorder):
    """An engine with ADDRESS connected and its catalog discovered."""
    future = connect_peripheral(engine, adapter)
    assert future.result(1.0) == ConnectionState.CONNECTED
    return engine


@pytest.fixture
def make_engine(adapter):
    """Build engines with custom settings on the shared adapter; all are closed after the test."""
    engines = []

    def _make(**kwargs):
        kwargs.setdefault("connect_timeout", 5.0)
        kwargs.setdefault("disconnect_timeout", 1.0)
        kwargs.setdefault("retry_policy_factory", RetryPolicy.immediate)
        eng = BLECentralEngine(adapter, **kwargs)
        engines.append(eng)
        return eng

    yield _make
    for eng in engines:
        eng.close()
