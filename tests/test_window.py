import pytest

from poolsync.services.window import WIDEST_WINDOW_DAYS, window_days


@pytest.mark.parametrize(
    "width, days",
    [(0, 30), (1200, 30), (1499, 30), (1500, 45), (1699.5, 45), (1700, 60), (2560, 60)],
)
def test_window_days(width, days):
    assert window_days(width) == days


def test_widest_window():
    assert window_days(10_000) == WIDEST_WINDOW_DAYS
