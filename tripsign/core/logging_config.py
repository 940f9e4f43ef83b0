import logging
import sys

from tripsign.core.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Libraries that log every object they parse at INFO/DEBUG.
_NOISY_LOGGERS = ("pypdf", "PIL", "pyhanko", "alembic.runtime.migration")


def setup_logging(level: str | None = None) -> logging.Logger:
    """Configure the root handler once and return the package logger."""
    root = logging.getLogger()
    resolved = (level or settings.log_level or "INFO").upper()
    if not any(getattr(h, "_tripsign", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._tripsign = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if settings.sql_debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return logging.getLogger("tripsign")
