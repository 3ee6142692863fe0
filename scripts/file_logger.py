import logging
import json
import os
from typing import Optional

from scripts.utils import utc_now

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            'timestamp': utc_now().isoformat(),
            'logger': record.name,
            'module': record.module,
            'level': record.levelname,
            'message': record.getMessage(),
            'function': record.funcName,
            'line': record.lineno,
            'thread': record.threadName
        }
        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def configure_logging(file_name: Optional[str] = None, log_dir: str = "logs", level=logging.INFO):
    """Configure root logging: console in the plain format, optional JSON file log."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(console_handler)

    if file_name:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, f"{file_name}.log"))
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    # Configure library loggers
    for logger_name in ["paramiko", "tortoise", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return root_logger
