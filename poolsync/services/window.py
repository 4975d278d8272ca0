WINDOW_BREAKPOINTS = ((1500, 30), (1700, 45))
WIDEST_WINDOW_DAYS = 60


def window_days(viewport_width: float) -> int:
    """Trailing days of chart history that fit a viewport of this width."""
    for max_width, days in WINDOW_BREAKPOINTS:
        if viewport_width < max_width:
            return days
    return WIDEST_WINDOW_DAYS
