from __future__ import annotations

DEFAULT_FLOOR_SECONDS = 60.0
DEFAULT_CEILING_SECONDS = 300.0

# (upper bound on transcript characters, deadline in seconds); the last band is open-ended.
_DEADLINE_BANDS: tuple[tuple[int, float], ...] = (
    (10_000, 60.0),
    (25_000, 90.0),
    (50_000, 150.0),
    (100_000, 240.0),
)


def timeout_for(
    transcript_length: int,
    *,
    floor_seconds: float = DEFAULT_FLOOR_SECONDS,
    ceiling_seconds: float = DEFAULT_CEILING_SECONDS,
) -> float:
    """
    Deadline in seconds for one provider call over a transcript of the given size.

    Piecewise constant and non-decreasing in `transcript_length`, clamped to
    `[floor_seconds, ceiling_seconds]`.
    """
    if ceiling_seconds < floor_seconds:
        raise ValueError("ceiling_seconds must not be below floor_seconds")

    length = max(0, transcript_length)
    deadline = ceiling_seconds
    for upper_bound, band_seconds in _DEADLINE_BANDS:
        if length <= upper_bound:
            deadline = band_seconds
            break
    return min(ceiling_seconds, max(floor_seconds, deadline))


def timeout_ms_for(
    transcript_length: int,
    *,
    floor_seconds: float = DEFAULT_FLOOR_SECONDS,
    ceiling_seconds: float = DEFAULT_CEILING_SECONDS,
) -> int:
    return int(
        timeout_for(
            transcript_length,
            floor_seconds=floor_seconds,
            ceiling_seconds=ceiling_seconds,
        )
        * 1000
    )
