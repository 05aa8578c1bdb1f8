import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


class LoggerMixin:
    """
    Mixin to add structured logging to classes.

    Messages may be plain strings or dictionaries; dictionaries are
    rendered as JSON so that log shippers can index the ``event`` key and
    its context (reminder_id, patient_id, instance_id, ...).

    Example:
        class LockService(LoggerMixin):
            async def acquire(self, key):
                self.log_debug({"event": "lock_acquired", "lock_key": key})
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._logger: Optional[logging.Logger] = None

    @property
    def logger(self) -> logging.Logger:
        """Lazy initialization of logger instance."""
        if getattr(self, "_logger", None) is None:
            self._logger = logging.getLogger(
                f"{self.__class__.__module__}.{self.__class__.__name__}"
            )
        return self._logger

    def _format_message(self, message: Union[str, Dict[str, Any]]) -> str:
        if isinstance(message, dict):
            return json.dumps(message, default=str, sort_keys=True)
        return message

    def log_info(self, message: Union[str, Dict[str, Any]], **kwargs) -> None:
        self.logger.info(self._format_message(message), **kwargs)

    def log_warning(self, message: Union[str, Dict[str, Any]], **kwargs) -> None:
        self.logger.warning(self._format_message(message), **kwargs)

    def log_error(
        self, message: Union[str, Dict[str, Any]], exc_info: bool = False, **kwargs
    ) -> None:
        """
        Log an error level message.

        Args:
            message: Message to log (string or dict)
            exc_info: Include exception information if True
            **kwargs: Additional context to pass to logger
        """
        self.logger.error(self._format_message(message), exc_info=exc_info, **kwargs)

    def log_critical(
        self, message: Union[str, Dict[str, Any]], exc_info: bool = False, **kwargs
    ) -> None:
        self.logger.critical(self._format_message(message), exc_info=exc_info, **kwargs)

    def log_debug(self, message: Union[str, Dict[str, Any]], **kwargs) -> None:
        self.logger.debug(self._format_message(message), **kwargs)

    def log_security_event(self, message: Union[str, Dict[str, Any]], **kwargs) -> None:
        """
        Log a security-related event at warning level.

        Used for rejected cron triggers; the 'SECURITY EVENT:' prefix keeps
        them easy to filter.
        """
        formatted_msg = self._format_message(message)
        self.logger.warning(f"SECURITY EVENT: {formatted_msg}", **kwargs)


class _ModuleLevelLogger(LoggerMixin):
    """Module-level logger instance that uses a fixed name."""

    def __init__(self):
        self._logger = logging.getLogger("app.logger")


logger = _ModuleLevelLogger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def mask_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    return f"***{phone[-4:]}"
