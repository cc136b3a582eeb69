"""Runtime defaults for the multibootstrap package.

Two knobs are resolved here rather than hard-coded at call sites:

* the number of worker processes used by the bootstrap orchestrator
  (``n_jobs``), and
* the default number of successful bootstrap fits ``B``.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_n_jobs` /
       :func:`set_default_n_boot`.
    2. The ``MULTIBOOTSTRAP_N_JOBS`` / ``MULTIBOOTSTRAP_N_BOOT``
       environment variables.
    3. Built-in defaults (``1`` worker, ``B = 1000``).

Examples:
    Run every bootstrap on four worker processes from the shell::

        export MULTIBOOTSTRAP_N_JOBS=4

    Or programmatically::

        import multibootstrap
        multibootstrap.set_n_jobs(4)

    Restore the default resolution order::

        multibootstrap.set_n_jobs(None)
"""

from __future__ import annotations

import os
import warnings

DEFAULT_N_BOOT = 1000
"""Reference workflow value for the number of successful fits."""

MIN_RECOMMENDED_BOOT = 30
"""Below this many draws percentile bounds are numerically unstable."""

DEFAULT_HEADROOM = 1.25
"""Candidate data sets generated per requested success."""

# Sentinels indicating "no programmatic override has been set".
_n_jobs_override: int | None = None
_n_boot_override: int | None = None


def _env_int(name: str) -> int | None:
    """Parse an integer environment variable, ignoring junk values."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def get_n_jobs() -> int:
    """Return the active worker count for bootstrap refits.

    Returns:
        ``1`` for in-process sequential fitting, ``-1`` for one worker
        per CPU, or a positive worker count.
    """
    if _n_jobs_override is not None:
        return _n_jobs_override

    env = _env_int("MULTIBOOTSTRAP_N_JOBS")
    if env is not None and env != 0:
        return env

    return 1


def set_n_jobs(n_jobs: int | None) -> None:
    """Override the worker count.

    Args:
        n_jobs: Positive worker count, ``-1`` for all CPUs, or
            ``None`` to restore the default resolution order.

    Raises:
        ValueError: If *n_jobs* is ``0`` or below ``-1``.
    """
    global _n_jobs_override
    if n_jobs is not None and (n_jobs == 0 or n_jobs < -1):
        msg = f"n_jobs must be a positive integer or -1, got {n_jobs}."
        raise ValueError(msg)
    _n_jobs_override = n_jobs


def get_default_n_boot() -> int:
    """Return the default number of successful bootstrap fits ``B``."""
    if _n_boot_override is not None:
        return _n_boot_override

    env = _env_int("MULTIBOOTSTRAP_N_BOOT")
    if env is not None and env >= 1:
        return env

    return DEFAULT_N_BOOT


def set_default_n_boot(n_boot: int | None) -> None:
    """Override the default ``B``.

    Values below :data:`MIN_RECOMMENDED_BOOT` are accepted (small ``B``
    is useful for smoke runs) but trigger a ``UserWarning``.

    Args:
        n_boot: Positive integer, or ``None`` to restore the default
            resolution order.

    Raises:
        ValueError: If *n_boot* is below 1.
    """
    global _n_boot_override
    if n_boot is not None:
        if n_boot < 1:
            msg = f"n_boot must be at least 1, got {n_boot}."
            raise ValueError(msg)
        if n_boot < MIN_RECOMMENDED_BOOT:
            warnings.warn(
                f"n_boot={n_boot} is below the recommended minimum of "
                f"{MIN_RECOMMENDED_BOOT}; percentile intervals will be "
                f"unstable.",
                UserWarning,
                stacklevel=2,
            )
    _n_boot_override = n_boot
