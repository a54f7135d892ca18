"""
formula_platform/config.py
==========================
Engine options. Callers build an ``EngineConfig`` directly or pull one from
the process environment with ``EngineConfig.from_env()``; every public entry
point accepts ``config=None`` and falls back to the defaults.
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 12

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class EngineConfig:
    """
    window_size          number of quarters in the evaluation window (Q1..Q<window_size>)
    collect_trace        build a FormulaTrace for every evaluation
    verbose_logging      emit DEBUG records for every metric lookup
    percent_as_fraction  read "12.5%" as 0.125 instead of 12.5
    max_formula_length   formulas longer than this are rejected at parse time
    """
    window_size: int = DEFAULT_WINDOW_SIZE
    collect_trace: bool = False
    verbose_logging: bool = False
    percent_as_fraction: bool = False
    max_formula_length: int = 10_000

    def with_overrides(self, **changes) -> "EngineConfig":
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes) if changes else self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            window_size=_env_int(env, "FORMULA_WINDOW_SIZE", defaults.window_size),
            collect_trace=_env_bool(env, "FORMULA_COLLECT_TRACE", defaults.collect_trace),
            verbose_logging=(
                _env_bool(env, "FORMULA_VERBOSE_LOGGING", defaults.verbose_logging)
                or _env_bool(env, "EXCEL_FORMULA_VERBOSE_LOGGING", False)
            ),
            percent_as_fraction=_env_bool(env, "FORMULA_PERCENT_AS_FRACTION", defaults.percent_as_fraction),
            max_formula_length=_env_int(env, "FORMULA_MAX_LENGTH", defaults.max_formula_length),
        )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer, using %d", name, raw, default)
        return default
    if value < 1:
        logger.warning("Ignoring %s=%r: must be >= 1, using %d", name, raw, default)
        return default
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    low = raw.strip().lower()
    if low in _TRUTHY:
        return True
    if low in _FALSY:
        return False
    logger.warning("Ignoring %s=%r: expected a boolean flag", name, raw)
    return default
