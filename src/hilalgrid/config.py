"""Runtime settings read from the environment (and a local .env file)."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

_ROOT = Path(__file__).parent.parent.parent


class ConfigError(Exception):
    """Malformed configuration value."""


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration. Defaults work without any environment."""

    data_dir: Path = _ROOT / "resources"  # skyfield download directory
    ephemeris: str = "de421.bsp"  # JPL kernel file name
    cache_path: str = ":memory:"  # DuckDB database; ":memory:" lives for the process
    cache_chunk_size: int = 500  # ids per IN (...) query
    cache_init_timeout: float = 10.0  # seconds to await cache start-up
    max_workers: int | None = None  # evaluator pool size; None = cpu count
    log_level: str = "WARNING"


def _int_env(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def load_settings() -> Settings:
    """Build Settings from HILALGRID_* environment variables.

    A .env file in the working directory is loaded first; variables already
    set in the environment take precedence over it.

    Raises:
        ConfigError: When a numeric variable cannot be parsed.
    """
    load_dotenv(find_dotenv(usecwd=True))
    defaults = Settings()
    data_dir = os.environ.get("HILALGRID_DATA_DIR")
    chunk_size = _int_env("HILALGRID_CACHE_CHUNK_SIZE", defaults.cache_chunk_size)
    assert chunk_size is not None
    return Settings(
        data_dir=Path(data_dir) if data_dir else defaults.data_dir,
        ephemeris=os.environ.get("HILALGRID_EPHEMERIS", defaults.ephemeris),
        cache_path=os.environ.get("HILALGRID_CACHE_PATH", defaults.cache_path),
        cache_chunk_size=chunk_size,
        cache_init_timeout=_float_env(
            "HILALGRID_CACHE_INIT_TIMEOUT", defaults.cache_init_timeout
        ),
        max_workers=_int_env("HILALGRID_MAX_WORKERS", defaults.max_workers),
        log_level=os.environ.get("HILALGRID_LOG_LEVEL", defaults.log_level).upper(),
    )


def configure_logging(level: str | int | None = None) -> None:
    """Attach a stderr handler to the package logger.

    Args:
        level: Logging level name or number. Taken from settings if None.
    """
    if level is None:
        level = load_settings().log_level
    logger = logging.getLogger("hilalgrid")
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
