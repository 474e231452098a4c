"""Invoice computation and lifecycle engine backed by an Excel workbook.

Importing the package configures the shared ``log`` used by every module:
a rotating file under ``.logs/`` plus warnings echoed to stderr. Set
``INVOICING_ERP_LOG_DIR`` to move the log file and ``INVOICING_ERP_LOG_LEVEL``
to change the file verbosity.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("INVOICING_ERP_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "invoicing_erp.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _file_level() -> int:
    level = logging.getLevelName(os.environ.get("INVOICING_ERP_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach the file and stderr handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _file_level()
    logger.setLevel(min(level, logging.WARNING))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Warning: invoice log disabled, cannot write '{LOG_FILE}': {exc}", file=sys.stderr)
    else:
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)

    return logger


log = _configure_logging()
log.debug("Logging configured for '%s' (file level %s)", __name__, logging.getLevelName(_file_level()))
