"""
p2p_engines.tracer -- Engine invocation tracer emitting P2P_ENGINE_TRACE.

Responsibility:
    ``@traced_engine`` wraps a pure engine function with one structured
    log record per call: engine name and version, a fingerprint of the
    selected inputs, and duration.

Architecture position:
    Engines -- infrastructure support for the pure calculation layer.
    Emits a log record only; engine results are untouched.

Invariants enforced:
    - The fingerprint is deterministic for identical inputs: values are
      rendered with ``repr`` (frozen dataclasses and Decimals render
      stably) and hashed with SHA-256, truncated to 16 hex chars.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import time
from collections.abc import Callable
from typing import Any

_logger = logging.getLogger("p2p_kernel.engines.tracer")


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    kwargs: dict[str, Any],
) -> str:
    """Hash the named keyword arguments.  Missing fields hash as ``None``."""
    canonical = "|".join(
        f"{name}={kwargs.get(name)!r}" for name in fingerprint_fields
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:
    """Decorator that emits P2P_ENGINE_TRACE for pure engine invocations.

    Args:
        engine_name: Engine identifier (e.g., "approval").
        engine_version: Engine version (e.g., "1.0").
        fingerprint_fields: Keyword argument names to include in the
            input fingerprint.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fp = ""
            if fingerprint_fields:
                fp = compute_input_fingerprint(fingerprint_fields, kwargs)

            t0 = time.monotonic()
            result = func(*args, **kwargs)
            duration_ms = round((time.monotonic() - t0) * 1000, 2)

            _logger.debug(
                "P2P_ENGINE_TRACE",
                extra={
                    "trace_type": "P2P_ENGINE_TRACE",
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "input_fingerprint": fp,
                    "duration_ms": duration_ms,
                    "function": func.__qualname__,
                },
            )
            return result

        return wrapper

    return decorator
