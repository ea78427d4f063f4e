"""
Configuration Management for DockShift
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import List


DEFAULT_DATABASE_IMAGE_PATTERNS = (
    'postgres',
    'mysql',
    'mariadb',
    'redis',
    'mongodb',
    'couchdb',
    'influxdb',
    'elasticsearch',
)


def setup_logging():
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    level = getattr(logging, AppConfig.LOG_LEVEL.upper(), logging.INFO)
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, 'dockshift.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # docker-py and urllib3 log every HTTP call at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('docker').setLevel(logging.WARNING)


def _parse_patterns(value: str) -> List[str]:
    return [p.strip().lower() for p in value.split(',') if p.strip()]


class ReadinessConfig:
    """Readiness probe thresholds from environment variables"""

    MAX_WAIT_SECONDS = float(os.getenv('DOCKSHIFT_READINESS_MAX_WAIT', 120))
    POLL_INTERVAL_SECONDS = float(os.getenv('DOCKSHIFT_READINESS_INTERVAL', 2))
    REQUIRED_STABLE_CHECKS = int(os.getenv('DOCKSHIFT_READINESS_STABLE_CHECKS', 3))

    # Containers whose healthcheck never leaves "starting"
    HEALTH_GRACE_SECONDS = float(os.getenv('DOCKSHIFT_READINESS_HEALTH_GRACE', 30))
    HEALTH_GRACE_CHECKS = int(os.getenv('DOCKSHIFT_READINESS_HEALTH_GRACE_CHECKS', 5))

    MIN_RUNNING_SECONDS = float(os.getenv('DOCKSHIFT_READINESS_MIN_RUNNING', 5))
    DATABASE_MIN_RUNNING_SECONDS = float(os.getenv('DOCKSHIFT_READINESS_DB_MIN_RUNNING', 15))

    LOG_TAIL_LINES = int(os.getenv('DOCKSHIFT_READINESS_LOG_TAIL', 50))

    DATABASE_IMAGE_PATTERNS = _parse_patterns(
        os.getenv('DOCKSHIFT_DATABASE_IMAGE_PATTERNS', ','.join(DEFAULT_DATABASE_IMAGE_PATTERNS))
    )


class RegistryConfig:
    """Registry lookup configuration from environment variables"""

    CACHE_TTL_SECONDS = int(os.getenv('DOCKSHIFT_REGISTRY_CACHE_TTL', 120))
    REQUEST_TIMEOUT_SECONDS = int(os.getenv('DOCKSHIFT_REGISTRY_TIMEOUT', 30))

    DOCKERHUB_USERNAME = os.getenv('DOCKSHIFT_DOCKERHUB_USERNAME')
    DOCKERHUB_TOKEN = os.getenv('DOCKSHIFT_DOCKERHUB_TOKEN')
    GITHUB_TOKEN = os.getenv('DOCKSHIFT_GITHUB_TOKEN')
    GITLAB_TOKEN = os.getenv('DOCKSHIFT_GITLAB_TOKEN')

    @classmethod
    def dockerhub_auth(cls):
        if cls.DOCKERHUB_USERNAME and cls.DOCKERHUB_TOKEN:
            return {'username': cls.DOCKERHUB_USERNAME, 'password': cls.DOCKERHUB_TOKEN}
        return None


class AppConfig:
    """Main application configuration"""

    from .paths import DATA_DIR as DEFAULT_DATA_DIR

    DATA_DIR = os.getenv('DOCKSHIFT_DATA_DIR', DEFAULT_DATA_DIR)

    # Logging
    LOG_LEVEL = os.getenv('DOCKSHIFT_LOG_LEVEL', 'INFO')

    # Upgrades
    MAX_CONCURRENT_UPGRADES = int(os.getenv('DOCKSHIFT_MAX_CONCURRENT_UPGRADES', 3))
    UPGRADE_LOCK_TIMEOUT_SECONDS = int(os.getenv('DOCKSHIFT_UPGRADE_LOCK_TIMEOUT', 600))

    READINESS = ReadinessConfig
    REGISTRY = RegistryConfig

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.LOG_LEVEL.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {cls.LOG_LEVEL}")

        if cls.MAX_CONCURRENT_UPGRADES < 1:
            raise ValueError(f"Max concurrent upgrades must be at least 1: {cls.MAX_CONCURRENT_UPGRADES}")

        if cls.UPGRADE_LOCK_TIMEOUT_SECONDS < 60:
            raise ValueError(f"Upgrade lock timeout must be at least 60 seconds: {cls.UPGRADE_LOCK_TIMEOUT_SECONDS}")

        readiness = cls.READINESS
        if readiness.POLL_INTERVAL_SECONDS <= 0:
            raise ValueError(f"Readiness poll interval must be positive: {readiness.POLL_INTERVAL_SECONDS}")

        if readiness.MAX_WAIT_SECONDS < readiness.POLL_INTERVAL_SECONDS:
            raise ValueError(
                f"Readiness max wait ({readiness.MAX_WAIT_SECONDS}s) must not be shorter "
                f"than the poll interval ({readiness.POLL_INTERVAL_SECONDS}s)"
            )

        if readiness.REQUIRED_STABLE_CHECKS < 1:
            raise ValueError(f"Required stable checks must be at least 1: {readiness.REQUIRED_STABLE_CHECKS}")

        if cls.REGISTRY.CACHE_TTL_SECONDS < 0:
            raise ValueError(f"Registry cache TTL cannot be negative: {cls.REGISTRY.CACHE_TTL_SECONDS}")

        return True
