"""Taskmesh configuration settings."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="TASKMESH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    num_workers: int = Field(default=4, gt=0, description="Workers started by a default context")
    worker_type: str = Field(default="thread", description="Worker executor kind: thread or process")
    threads_per_worker: int = Field(default=4, gt=0)
    process_queue_depth: int = Field(
        default=2,
        gt=0,
        description="Tasks kept in flight per process worker. Queued tasks can still be cancelled.",
    )
    worker_tags: str = Field(default="", description="Comma-separated tags attached to every processor")

    heartbeat_interval: float = Field(default=1.0, gt=0)
    heartbeat_timeout: float = Field(default=10.0, gt=0)
    monitor_interval: float = Field(default=0.5, gt=0)
    worker_start_timeout: float = Field(default=120.0, gt=0)
    worker_shutdown_timeout: float = Field(default=10.0, gt=0)

    transfer_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds allowed for a single get/put against a worker",
    )
    default_task_timeout: Optional[float] = Field(default=None, description="Deadline applied to every task")

    checkpoint_backend: str = Field(default="none", description="none, memory or redis")
    checkpoint_ttl: int = Field(default=0, ge=0, description="Checkpoint expiry in seconds, 0 keeps forever")

    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    redis_password: str = Field(default="")
    redis_key_prefix: str = Field(default="taskmesh")

    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=10907)

    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="logs")
    log_to_file: bool = Field(default=False)
    log_max_bytes: int = Field(default=100 * 1024 * 1024)
    log_backup_count: int = Field(default=5)

    @field_validator("worker_type", mode="before")
    @classmethod
    def validate_worker_type(cls, v):
        value = str(v).strip().lower()
        if value not in ("thread", "process"):
            raise ValueError(f"Unknown worker type '{v}', expected 'thread' or 'process'")
        return value

    @field_validator("checkpoint_backend", mode="before")
    @classmethod
    def validate_checkpoint_backend(cls, v):
        value = str(v).strip().lower()
        if value not in ("none", "memory", "redis"):
            raise ValueError(f"Unknown checkpoint backend '{v}'")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v):
        return str(v).strip().upper()

    @property
    def tags(self) -> List[str]:
        return [t.strip() for t in self.worker_tags.split(",") if t.strip()]

    def setup_log_directory(self) -> Path:
        log_path = Path(self.log_dir)
        if not log_path.is_absolute():
            log_path = PROJECT_ROOT / self.log_dir
        os.makedirs(log_path, exist_ok=True)
        return log_path

    def get_redis_url(self) -> str:
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def redis_url(self) -> str:
        return self.get_redis_url()


settings = Settings()


def get_logging_config(config: Optional[Settings] = None) -> Dict[str, Any]:
    config = config or settings

    handlers: Dict[str, Any] = {
        "console": {
            "level": config.log_level,
            "formatter": "standard",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        }
    }

    if config.log_to_file:
        log_path = config.setup_log_directory()
        for component in ("scheduler", "worker", "api"):
            handlers[f"file_{component}"] = {
                "level": config.log_level,
                "formatter": "detailed",
                "class": "logging.handlers.RotatingFileHandler",
                "filename": str(log_path / f"{component}.log"),
                "maxBytes": config.log_max_bytes,
                "backupCount": config.log_backup_count,
                "encoding": "utf8",
            }

    def _handlers(component: str) -> List[str]:
        return ["console"] + ([f"file_{component}"] if config.log_to_file else [])

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"},
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s [%(filename)s:%(lineno)d] - %(message)s"
            },
        },
        "handlers": handlers,
        "loggers": {
            "taskmesh": {
                "handlers": _handlers("scheduler"),
                "level": config.log_level,
                "propagate": False,
            },
            "taskmesh.worker": {
                "handlers": _handlers("worker"),
                "level": config.log_level,
                "propagate": False,
            },
            "taskmesh.api": {
                "handlers": _handlers("api"),
                "level": config.log_level,
                "propagate": False,
            },
            "uvicorn": {
                "handlers": _handlers("api"),
                "level": config.log_level,
                "propagate": False,
            },
        },
    }


def setup_logging(component_name: str = "scheduler", config: Optional[Settings] = None):
    import logging
    import logging.config

    config = config or settings
    logging.config.dictConfig(get_logging_config(config))

    if component_name == "api":
        logger_name = "taskmesh.api"
    elif component_name == "worker":
        logger_name = "taskmesh.worker"
    else:
        logger_name = "taskmesh.scheduler"

    logger = logging.getLogger(logger_name)
    logger.info(f"Logging configured for {component_name} - File logging: {config.log_to_file}")
    return logger
