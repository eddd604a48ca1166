"""
Configuration Management for Stardeck
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import List, Optional


class HealthCheckFilter(logging.Filter):
    """Filter out health check requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if '/health' in message and '200' in message:
            return False
        return True


def setup_logging(log_level: Optional[str] = None):
    """Configure application logging with rotation"""
    from .paths import LOGS_DIR

    os.makedirs(LOGS_DIR, mode=0o700, exist_ok=True)

    level = getattr(logging, (log_level or os.getenv('STARDECK_LOG_LEVEL', 'INFO')).upper(), logging.INFO)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers so our configuration wins
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOGS_DIR, 'stardeck.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    # docker SDK logs every HTTP request to the engine socket at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)


def get_cors_origins() -> List[str]:
    """
    Get CORS origins from environment.

    Returns:
        List of allowed origins (empty list disables CORS middleware)
    """
    custom_origins = os.getenv('STARDECK_CORS_ORIGINS', '')
    return [origin.strip() for origin in custom_origins.split(',') if origin.strip()]


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger(__name__).warning(f"Invalid value for {name}: {value!r}, using {default}")
        return default


class AppConfig:
    """Main application configuration"""

    def __init__(self):
        from .paths import DATA_DIR, DATABASE_URL, STACKS_DIR, BACKUPS_DIR

        # Storage
        self.DATA_DIR = DATA_DIR
        self.DATABASE_URL = DATABASE_URL
        self.STACKS_DIR = STACKS_DIR
        self.BACKUPS_DIR = BACKUPS_DIR

        # Server
        self.HOST = os.getenv('STARDECK_HOST', '0.0.0.0')
        self.PORT = int(os.getenv('STARDECK_PORT', 8080))
        self.LOG_LEVEL = os.getenv('STARDECK_LOG_LEVEL', 'INFO')

        # Container engine
        # Podman exposes a Docker-compatible API socket (podman.socket)
        self.DOCKER_HOST = os.getenv('STARDECK_DOCKER_HOST') or os.getenv('DOCKER_HOST')
        self.COMPOSE_COMMAND = os.getenv('STARDECK_COMPOSE_COMMAND', 'docker compose')

        # Engine call timeouts (seconds)
        self.INSPECT_TIMEOUT = _get_float('STARDECK_INSPECT_TIMEOUT', 5.0)
        self.OPERATION_TIMEOUT = _get_float('STARDECK_OPERATION_TIMEOUT', 30.0)
        self.CREATE_TIMEOUT = _get_float('STARDECK_CREATE_TIMEOUT', 120.0)
        self.PULL_TIMEOUT = _get_float('STARDECK_PULL_TIMEOUT', 600.0)

        # Workflow timeouts (seconds)
        self.UPDATE_TIMEOUT = _get_float('STARDECK_UPDATE_TIMEOUT', 1800.0)
        self.STACK_TIMEOUT = _get_float('STARDECK_STACK_TIMEOUT', 1800.0)
        self.SHUTDOWN_GRACE = _get_float('STARDECK_SHUTDOWN_GRACE', 60.0)
        self.DEFAULT_STOP_TIMEOUT = int(os.getenv('STARDECK_DEFAULT_STOP_TIMEOUT', 30))

        # Progress streaming
        self.PROGRESS_QUEUE_SIZE = int(os.getenv('STARDECK_PROGRESS_QUEUE_SIZE', 256))
        self.PROGRESS_SEND_TIMEOUT = _get_float('STARDECK_PROGRESS_SEND_TIMEOUT', 5.0)

    def validate(self):
        """Validate configuration"""
        if self.PORT < 1 or self.PORT > 65535:
            raise ValueError(f"Invalid port: {self.PORT}")

        if self.PROGRESS_QUEUE_SIZE < 2:
            raise ValueError(f"Progress queue size must be at least 2: {self.PROGRESS_QUEUE_SIZE}")

        for name in ('INSPECT_TIMEOUT', 'OPERATION_TIMEOUT', 'CREATE_TIMEOUT', 'PULL_TIMEOUT',
                     'UPDATE_TIMEOUT', 'STACK_TIMEOUT'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive: {getattr(self, name)}")

        return True
