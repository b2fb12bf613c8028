from __future__ import annotations

DEFAULT_DIFF_THRESHOLD = 0.1


def evaluate(percentage_diff: float, threshold: float | None = None) -> bool:
    """Return True when a diff is large enough to warrant review.

    ``threshold`` is the project's configured percentage; ``None`` falls back to
    ``DEFAULT_DIFF_THRESHOLD``. The boundary is inclusive.
    """
    effective = DEFAULT_DIFF_THRESHOLD if threshold is None else float(threshold)
    return float(percentage_diff) >= effective
