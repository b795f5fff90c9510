"""PetWatch Logger - Cross-platform, self-cleaning logging utility."""

import logging
import platform
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from petwatch.core.config import settings


class PetWatchLogger:
    """
    Cross-platform logging utility for the watchdog service.

    Features:
    - Zero external dependencies (stdlib only)
    - Cross-platform log directory handling
    - Self-cleaning with size-based rotation
    """

    def __init__(self, name: str = "petwatch"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        self._setup_handlers()

    def _get_log_dir(self) -> Path:
        """Cross-platform log directory discovery."""
        if settings.log_dir is not None:
            log_dir = settings.log_dir
        elif platform.system() == "Windows":
            # Windows: %LOCALAPPDATA%\petwatch\logs
            log_dir = Path.home() / "AppData/Local/petwatch/logs"
        else:
            # Linux/macOS: ~/.local/state/petwatch/logs (XDG state dir)
            log_dir = Path.home() / ".local/state/petwatch/logs"

        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def _setup_handlers(self):
        """Set up console and rotating file handlers."""
        # Prevent double logging if handlers already exist
        if self.logger.handlers:
            return

        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(logging.INFO)
        self.logger.addHandler(console_handler)

        try:
            log_file = self._get_log_dir() / "petwatch.log"
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)  # File gets more detail
            self.logger.addHandler(file_handler)
        except (OSError, PermissionError) as e:
            # Console-only logging is still usable
            self.logger.warning(f"Could not set up file logging: {e}")
            self.logger.info("Continuing with console logging only")


# Global instance - import this everywhere
logger = PetWatchLogger().logger
