from __future__ import annotations

from collections.abc import Mapping
import os


def as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """Production profile: refuses the in-process store and queue fallbacks."""
    env = os.environ if environ is None else environ
    return as_bool(env.get("SNAPWATCH_REQUIRE_TRUESTACK", "false"))
