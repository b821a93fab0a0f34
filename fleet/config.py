"""Configuration management for the orchestrator."""
from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class OrchestratorSettings:
    """Timers and limits of the orchestration core. Durations are seconds."""

    heartbeat_interval: float = 30.0
    health_check_interval: float = 60.0
    heartbeat_timeout: float = 180.0
    drain_timeout: float = 30.0
    max_concurrent_executions: int = 10
    queue_max_size: int = 1000
    queue_max_concurrency: int = 5


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    environment: str = "development"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from ``FLEET_*`` environment variables."""
        health_interval = float(os.getenv("FLEET_HEALTH_CHECK_INTERVAL", "60"))
        orchestrator = OrchestratorSettings(
            heartbeat_interval=float(os.getenv("FLEET_HEARTBEAT_INTERVAL", "30")),
            health_check_interval=health_interval,
            heartbeat_timeout=float(
                os.getenv("FLEET_HEARTBEAT_TIMEOUT", str(health_interval * 3))
            ),
            drain_timeout=float(os.getenv("FLEET_DRAIN_TIMEOUT", "30")),
            max_concurrent_executions=int(os.getenv("FLEET_MAX_CONCURRENT_EXECUTIONS", "10")),
            queue_max_size=int(os.getenv("FLEET_QUEUE_MAX_SIZE", "1000")),
            queue_max_concurrency=int(os.getenv("FLEET_QUEUE_MAX_CONCURRENCY", "5")),
        )
        return cls(
            orchestrator=orchestrator,
            logging=LoggingConfig(
                level=os.getenv("FLEET_LOG_LEVEL", "INFO"),
                format=os.getenv("FLEET_LOG_FORMAT", "text"),
            ),
            environment=os.getenv("FLEET_ENVIRONMENT", "development"),
        )


# Global config instance
config = Config.from_env()
