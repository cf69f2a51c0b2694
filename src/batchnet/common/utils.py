"""
Utility functions used throughout the batchnet system.
"""

import logging
import os
import socket
import time
import uuid
from typing import Any, Dict, Optional

import structlog
import yaml


def setup_logging(level: str = "INFO") -> None:
    """Setup structured logging for the application"""

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def generate_request_id() -> str:
    """Generate a unique request ID"""
    return uuid.uuid4().hex


def generate_allocation_id() -> str:
    """Generate a unique allocation ID"""
    return f"alloc-{uuid.uuid4().hex[:12]}"


def default_owner_id() -> str:
    """Identity of the current process as an allocation owner"""
    return f"{socket.gethostname()}:{os.getpid()}"


def parse_owner_pid(owner_id: str) -> Optional[int]:
    """Extract the pid from an owner id of the form 'host:pid' or 'pid'"""
    _, _, pid = owner_id.rpartition(":")
    try:
        return int(pid)
    except ValueError:
        return None


def load_yaml_config(file_path: str) -> Dict[str, Any]:
    """Load YAML configuration file"""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ValueError(f"Configuration file not found: {file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML configuration: {e}")


def format_duration(seconds: float) -> str:
    """Format duration in human readable format"""
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    elif seconds < 60:
        return f"{seconds:.1f} seconds"
    elif seconds < 3600:
        return f"{seconds / 60:.1f} minutes"
    else:
        return f"{seconds / 3600:.1f} hours"


class RateLimiter:
    """Lets an event through at most once per interval"""

    def __init__(self, interval: float, clock=time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        now = self._clock()
        if self._last is None or now - self._last >= self.interval:
            self._last = now
            return True
        return False

    def reset(self) -> None:
        self._last = None
