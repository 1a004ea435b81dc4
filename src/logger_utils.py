import logging
import os
import sys
from typing import Any, Dict


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to log levels and renders context fields"""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',    # cyan
        'INFO': '\033[32m',     # green
        'WARNING': '\033[33m',  # yellow
        'ERROR': '\033[31m',    # red
        'CRITICAL': '\033[35m', # magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[90m'

    def __init__(self, use_colors=True):
        super().__init__()
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self):
        """Check if terminal supports colors"""
        return (
            hasattr(sys.stderr, "isatty") and sys.stderr.isatty() and
            os.environ.get('TERM') != 'dumb' and
            os.environ.get('NO_COLOR') is None
        )

    def _format_fields(self, record) -> str:
        fields: Dict[str, Any] = getattr(record, 'fields', None) or {}
        if not fields:
            return ""
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())
        if self.use_colors:
            return f" {self.DIM}{pairs}{self.RESET}"
        return f" {pairs}"

    def format(self, record):
        message = record.getMessage() + self._format_fields(record)
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)

        if self.use_colors:
            level_color = self.COLORS.get(record.levelname, '')
            level_name = f"{level_color}{self.BOLD}{record.levelname:<8}{self.RESET}"

            # format timestamp with subdued color
            timestamp = f"{self.DIM}{self.formatTime(record, '%H:%M:%S')}{self.RESET}"

            line = f"{timestamp} {level_name} {message}"
        else:
            # fallback to standard format without colors
            line = f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} - {record.levelname} - {message}"

        if record.exc_text:
            line = f"{line}\n{record.exc_text}"
        return line


def with_fields(**fields: Any) -> Dict[str, Any]:
    """Build the ``extra`` mapping for a log call carrying key=value context"""
    return {'fields': fields}


# configure colored logging
def setup_logging(verbose=False, no_color=False):
    """Setup logging with colors and appropriate level"""
    logger = logging.getLogger()

    # remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    # create console handler with colored formatter
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_colors=not no_color))

    # set level
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    console_handler.setLevel(level)

    logger.addHandler(console_handler)

    # web3 and urllib3 are chatty at DEBUG
    if not verbose:
        logging.getLogger('web3').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logger
