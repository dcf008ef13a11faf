"""Tests for the structlog helpers."""

import pytest

from followup.core.logging import (
    add_correlation_id,
    get_correlation_id,
    set_correlation_id,
    truncate_pii,
)


@pytest.fixture(autouse=True)
def clear_run_id():
    yield
    set_correlation_id(None)


class TestCorrelationId:
    """Tests for the run_id processor."""

    def test_bound_run_id_is_added(self) -> None:
        set_correlation_id("run-42")
        event = add_correlation_id(None, "info", {"event": "email_classified"})
        assert event == {"event": "email_classified", "run_id": "run-42"}

    def test_no_run_id_leaves_event_alone(self) -> None:
        assert get_correlation_id() is None
        assert add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}

    def test_clearing(self) -> None:
        set_correlation_id("run-1")
        set_correlation_id(None)
        assert get_correlation_id() is None


def test_truncate_pii() -> None:
    assert truncate_pii(None) == ""
    assert truncate_pii("someone.long@example.com") == "someone.long@example"
    assert truncate_pii("short@x.io", limit=5) == "short"
