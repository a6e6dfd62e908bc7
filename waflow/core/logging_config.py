# waflow/core/logging_config.py
"""
Logging configuration for waflow.
Console output plus rotating log files, with a dedicated file for the flow engine.
"""
import logging
import logging.handlers
import sys
from pathlib import Path


# Create logs directory
LOGS_DIR = Path(__file__).parent.parent.parent / "logs"

# Log files
ERROR_LOG_FILE = LOGS_DIR / "error.log"
DEBUG_LOG_FILE = LOGS_DIR / "debug.log"
FLOW_ENGINE_LOG_FILE = LOGS_DIR / "flow_engine.log"

FLOW_ENGINE_LOGGER = "waflow.flow_engine"


class ColoredFormatter(logging.Formatter):
    """Colored console formatter for better readability"""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record):
        # Work on a copy so file handlers still see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        log_color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        record.levelname = f"{log_color}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


def _rotating(path: Path, level: int, fmt: str, max_mb: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=5,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt='%Y-%m-%d %H:%M:%S'))
    return handler


def setup_logging(app_name: str = "waflow", level: str = "INFO"):
    """
    Setup logging with console and file handlers.

    Creates three log files:
    - error.log: Only ERROR and CRITICAL messages
    - debug.log: All DEBUG and above messages
    - flow_engine.log: Routing decisions and function runs
    """
    LOGS_DIR.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # ═══════════════════════════════════════════════════════════
    # Console Handler - with colors
    # ═══════════════════════════════════════════════════════════
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    console_handler.setFormatter(ColoredFormatter('%(levelname)s | %(name)s | %(message)s'))
    root_logger.addHandler(console_handler)

    # ═══════════════════════════════════════════════════════════
    # ERROR / DEBUG Log Files - Rotating
    # ═══════════════════════════════════════════════════════════
    root_logger.addHandler(_rotating(
        ERROR_LOG_FILE,
        logging.ERROR,
        '%(asctime)s | %(levelname)s | %(name)s | %(filename)s:%(lineno)d | %(message)s',
        10,
    ))
    root_logger.addHandler(_rotating(
        DEBUG_LOG_FILE,
        logging.DEBUG,
        '%(asctime)s | %(levelname)-8s | %(name)-30s | %(filename)s:%(lineno)d | %(message)s',
        20,
    ))

    # ═══════════════════════════════════════════════════════════
    # Flow Engine Log File - only the engine hierarchy
    # ═══════════════════════════════════════════════════════════
    flow_logger = logging.getLogger(FLOW_ENGINE_LOGGER)
    for handler in flow_logger.handlers[:]:
        flow_logger.removeHandler(handler)
    flow_logger.addHandler(_rotating(
        FLOW_ENGINE_LOG_FILE,
        logging.DEBUG,
        '%(asctime)s | %(levelname)-8s | %(message)s',
        20,
    ))
    flow_logger.setLevel(logging.DEBUG)
    flow_logger.propagate = True  # Also send to root handlers

    # Quiet chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"{'='*60}")
    logger.info(f"Logging initialized for {app_name}")
    logger.info(f"Log directory: {LOGS_DIR}")
    logger.info(f"Flow engine log: {FLOW_ENGINE_LOG_FILE}")
    logger.info(f"{'='*60}")

    return root_logger


def get_flow_logger(name: str = "") -> logging.Logger:
    """Logger inside the flow engine hierarchy (written to flow_engine.log)"""
    return logging.getLogger(f"{FLOW_ENGINE_LOGGER}.{name}" if name else FLOW_ENGINE_LOGGER)
