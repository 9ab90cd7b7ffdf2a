from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

from .formula_engine import DEFAULT_LOCALE, LOCALES, MAX_FORMULA_DEPTH, MAX_FORMULA_LENGTH

DEFAULT_MAX_PASSES = 5
ENV_PREFIX = "FORM_LOGIC_"

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class EngineSettings:
    log_level: str = "INFO"
    locale: str = DEFAULT_LOCALE
    max_passes: int = DEFAULT_MAX_PASSES
    max_formula_length: int = MAX_FORMULA_LENGTH
    max_formula_depth: int = MAX_FORMULA_DEPTH


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 1 else default


def load_settings(environ: Mapping[str, str] | None = None) -> EngineSettings:
    env = os.environ if environ is None else environ
    locale = env.get(f"{ENV_PREFIX}LOCALE", DEFAULT_LOCALE)
    if locale not in LOCALES:
        logger.warning("unsupported_locale", extra={"locale": locale, "fallback": DEFAULT_LOCALE})
        locale = DEFAULT_LOCALE
    return EngineSettings(
        log_level=env.get(f"{ENV_PREFIX}LOG_LEVEL", "INFO").upper(),
        locale=locale,
        max_passes=_positive_int(env.get(f"{ENV_PREFIX}MAX_PASSES"), DEFAULT_MAX_PASSES),
        max_formula_length=_positive_int(env.get(f"{ENV_PREFIX}MAX_FORMULA_LENGTH"), MAX_FORMULA_LENGTH),
        max_formula_depth=_positive_int(env.get(f"{ENV_PREFIX}MAX_FORMULA_DEPTH"), MAX_FORMULA_DEPTH),
    )


def configure_logging(settings: EngineSettings) -> logging.Logger:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    package_logger = logging.getLogger("form_logic")
    package_logger.setLevel(level)
    return package_logger
