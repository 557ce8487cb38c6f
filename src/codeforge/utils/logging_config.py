"""
Centralized Logging Configuration
=================================

Unified logging setup: colored console output, size-rotated log file,
level from LOG_LEVEL and quieter third-party loggers.
"""

import logging
import sys
import time
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from colorama import Fore, Style, init

from codeforge.config.settings import Settings, get_settings

init(autoreset=True)

APP_LOGGER_NAME = 'codeforge'

LEVEL_COLORS = {
    logging.DEBUG: Fore.CYAN,
    logging.INFO: Fore.GREEN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.RED + Style.BRIGHT,
}

# Checked in order; first matching fragment picks the name color
COMPONENT_COLORS = (
    ('lock', Fore.RED),
    ('registry', Fore.MAGENTA),
    ('coordinator', Fore.BLUE),
    ('gen.', Fore.CYAN),
    ('cli', Fore.YELLOW),
)

NAME_PREFIXES = (
    ('codeforge.services.generation.', 'gen.'),
    ('codeforge.services.', 'svc.'),
    ('codeforge.utils.', 'util.'),
    ('codeforge.cli.', 'cli.'),
)
NAME_WIDTH = 20


class ColoredSmartFormatter(logging.Formatter):
    """One-line records: time, level, short component name, message.

    With ``include_function`` the caller location is appended for
    warnings and above. ``use_colors=False`` gives plain text for files.
    """

    def __init__(self, include_function: bool = False, use_colors: bool = True):
        super().__init__()
        self.include_function = include_function
        self.use_colors = use_colors

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{Style.RESET_ALL}" if self.use_colors and color else text

    def format(self, record: logging.LogRecord) -> str:
        name = self._clean_logger_name(record.name)
        parts = [
            f"[{self.formatTime(record, '%H:%M:%S')}]",
            self._paint(f"{record.levelname:8}", LEVEL_COLORS.get(record.levelno, '')),
            self._paint(f"{name:{NAME_WIDTH}}", self._component_color(name)),
        ]
        if self.include_function and record.levelno >= logging.WARNING:
            parts.append(self._paint(f"[{record.funcName}:{record.lineno}]", Fore.WHITE + Style.DIM))

        message = record.getMessage()
        if record.exc_info:
            message += '\n' + self.formatException(record.exc_info)
        parts.append(message)
        return ' '.join(parts)

    def _clean_logger_name(self, name: str) -> str:
        for prefix, short in NAME_PREFIXES:
            if name.startswith(prefix):
                name = short + name[len(prefix):]
                break
        if len(name) > NAME_WIDTH:
            name = name[:NAME_WIDTH - 3] + '...'
        return name

    def _component_color(self, name: str) -> str:
        lowered = name.lower()
        for fragment, color in COMPONENT_COLORS:
            if fragment in lowered:
                return color
        return Fore.WHITE


class LoggingConfig:
    """Console plus rotating file logging for the application.

    Handlers it installs are tagged so a repeated ``setup_logging`` swaps
    them without touching handlers owned by someone else (pytest caplog).
    """

    MAX_BYTES = 10 * 1024 * 1024
    BACKUP_COUNT = 5
    QUIET_LOGGERS = ('aiohttp', 'aiohttp.access', 'redis', 'asyncio', 'urllib3')

    def __init__(self, app_name: str = APP_LOGGER_NAME, settings: Optional[Settings] = None):
        self.app_name = app_name
        self.settings = settings or get_settings()
        self.log_dir = self.settings.log_dir or self.settings.log_base
        self.log_level = getattr(logging, (self.settings.log_level or 'INFO').upper(), logging.INFO)

    @staticmethod
    def _tagged(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._codeforge = True  # type: ignore[attr-defined]
        return handler

    def setup_logging(self) -> logging.Logger:
        root = logging.getLogger()
        for handler in [h for h in root.handlers if getattr(h, '_codeforge', False)]:
            root.removeHandler(handler)
            handler.close()
        root.setLevel(self.log_level)

        root.addHandler(self._tagged(logging.StreamHandler(sys.stdout), self.log_level, ColoredSmartFormatter()))

        log_file = self._prepare_log_file()
        if log_file is not None:
            rotating = RotatingFileHandler(log_file, maxBytes=self.MAX_BYTES, backupCount=self.BACKUP_COUNT,
                                           encoding='utf-8')
            # File gets everything, with caller locations on warnings
            root.addHandler(self._tagged(rotating, logging.DEBUG,
                                         ColoredSmartFormatter(include_function=True, use_colors=False)))

        warnings.filterwarnings('ignore', category=DeprecationWarning, module='aiohttp')
        logging.captureWarnings(True)
        logging.getLogger('py.warnings').setLevel(logging.ERROR)
        for name in self.QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

        app_logger = logging.getLogger(self.app_name)
        app_logger.info(f"📝 Logging ready (level {logging.getLevelName(self.log_level)}, dir {self.log_dir})")
        return app_logger

    def _prepare_log_file(self) -> Optional[Path]:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"[logging] Cannot create log dir {self.log_dir}: {e}\n")
            return None
        return self.log_dir / f"{self.app_name}.log"

    def cleanup_old_logs(self, days_to_keep: int = 7) -> int:
        """Delete log files (rotated ones included) older than ``days_to_keep``."""
        if not self.log_dir.exists():
            return 0
        cutoff = time.time() - days_to_keep * 86400
        removed = 0
        for log_file in self.log_dir.glob('*.log*'):
            try:
                if log_file.stat().st_mtime < cutoff:
                    log_file.unlink()
                    removed += 1
            except OSError as e:
                logging.getLogger(self.app_name).debug(f"Could not remove {log_file}: {e}")
        return removed


_logging_config: Optional[LoggingConfig] = None


def get_logging_config() -> LoggingConfig:
    global _logging_config
    if _logging_config is None:
        _logging_config = LoggingConfig()
    return _logging_config


def setup_application_logging() -> logging.Logger:
    """Configure logging once at process start."""
    return get_logging_config().setup_logging()
