import logging
import sys
import time

from pythonjsonlogger import jsonlogger

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiokafka", "httpx")


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines stamped with the emitting service, UTC timestamps."""

    converter = time.gmtime

    def __init__(self, service: str, **kwargs) -> None:
        super().__init__(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%SZ",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            **kwargs,
        )
        self.service = service

    def add_fields(self, log_record, record, message_dict) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("service", self.service)


def setup_logging(log_level: str = "INFO", service: str = "order-store") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ServiceJsonFormatter(service))
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
