import os
import logging
from datetime import datetime
from collections import deque
from typing import List, Optional


LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class BufferHandler(logging.Handler):
    """
    Custom logging handler that retains recent log messages in a ring buffer.

    Args:
        buffer_length: Maximum number of log messages to retain.
    """
    def __init__(self, buffer_length: int) -> None:
        super().__init__()
        self._messages: deque[str] = deque(maxlen=buffer_length)

    def emit(self, record: logging.LogRecord) -> None:
        """Formats and stores the log record."""
        msg = self.format(record)
        self._messages.append(msg)

    def get_messages(self) -> List[str]:
        """Returns all buffered log messages."""
        return list(self._messages)

    def get_latest_message(self) -> str:
        """Returns the most recent log message, or an empty string if buffer is empty."""
        return self._messages[-1] if self._messages else ""

    def clear_messages(self) -> None:
        """Clears all messages from the buffer."""
        self._messages.clear()


def start_root_logger(
    logger_level: int = logging.DEBUG,
    buffer_length: int = 300,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """
    Initializes the application-wide root logger with console, buffer, and optional timestamped file output.

    Args:
        logger_level: Logging level to apply.
        buffer_length: Max number of messages to buffer.
        log_dir: Directory for the timestamped log file; no file is written when None.

    Returns:
        The configured logger instance.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logger_level)

    # Check if handlers are already added to prevent duplicate logs
    if not any(isinstance(handler, BufferHandler) for handler in root_logger.handlers):
        formatter = logging.Formatter(LOG_FORMAT)

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
            log_file_path = os.path.join(log_dir, f"rtc_log_{timestamp}.log")

            file_handler = logging.FileHandler(log_file_path)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

        buffer_handler = BufferHandler(buffer_length)
        buffer_handler.setFormatter(formatter)
        root_logger.addHandler(buffer_handler)

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    return root_logger


def get_root_logger() -> logging.Logger:
    """Returns the configured application logger."""
    return logging.getLogger()


def get_buffer_handler() -> Optional[BufferHandler]:
    """Returns the ring-buffer handler attached to the root logger, if any."""
    for handler in logging.getLogger().handlers:
        if isinstance(handler, BufferHandler):
            return handler
    return None
