"""
Configuration management using Pydantic Settings with safe access wrapper
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional, Any


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Rollout Controller"
    version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: List[str] = ["http://localhost:3000"]

    # Persistence settings
    store_backend: str = "sql"
    database_url: str = "sqlite:///data/rollout_controller.db"
    database_pool_size: int = 20
    database_max_overflow: int = 40
    database_pool_recycle: int = 3600

    # Cache settings
    redis_url: Optional[str] = None
    cache_ttl: int = 3600
    max_cache_size: int = 10000
    cache_namespace: str = "rollout"

    # Live feature flag surface
    feature_flags_path: str = "config/feature_flags.json"

    # Health monitoring
    monitor_interval_seconds: float = 60.0
    monitor_max_lifetime_hours: float = 24.0

    # Rollback plan template
    rollback_estimated_duration_minutes: int = 15
    rollback_affected_users_base: int = 1000
    rollback_cache_keys: List[str] = ["chat-config", "feature-flags"]
    rollback_notification_message: str = (
        "We have temporarily disabled some features to improve your experience."
    )

    # Notification collaborator
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: int = 10
    notification_failure_threshold: int = 5
    notification_recovery_timeout: int = 60

    # Logging settings
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "rollout_controller.log"
    log_file_max_bytes: int = 10485760
    log_file_backup_count: int = 10

    # Monitoring
    enable_metrics: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",   # allow unknown env vars without error
    )

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._validated = False
        self.validate_settings()

    def validate_settings(self):
        """Validate critical settings on startup"""
        if self._validated:
            return

        errors = []

        if self.environment not in ["development", "testing", "production"]:
            errors.append(f"Invalid environment: {self.environment}")

        if self.store_backend not in ["sql", "memory"]:
            errors.append(
                f"Invalid store backend: {self.store_backend}. Valid options: ['sql', 'memory']"
            )

        if self.store_backend == "sql" and not self.database_url:
            errors.append("Database URL is required for the sql store backend")

        if self.monitor_interval_seconds <= 0:
            errors.append("Monitor interval must be positive")

        if self.monitor_max_lifetime_hours <= 0:
            errors.append("Monitor lifetime must be positive")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")

        self._validated = True

    @property
    def monitor_max_lifetime_seconds(self) -> float:
        return self.monitor_max_lifetime_hours * 3600


class SafeSettings:
    """Safe wrapper for settings with fallback defaults"""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._defaults = {
            "store_backend": "sql",
            "cache_ttl": 3600,
            "max_cache_size": 10000,
            "cache_namespace": "rollout",
            "log_level": "INFO",
            "log_dir": "logs",
            "environment": "development",
            "debug": False,
            "enable_metrics": True,
            "monitor_interval_seconds": 60.0,
            "monitor_max_lifetime_hours": 24.0,
            "database_pool_size": 20,
            "redis_url": None,
            "notification_webhook_url": None,
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Safely get setting value with fallback"""
        try:
            value = getattr(self._settings, key, None)
            if value is None:
                value = self._defaults.get(key, default)
            return value
        except Exception:
            return self._defaults.get(key, default)

    def __getattr__(self, key: str) -> Any:
        """Proxy attribute access with safety"""
        return self.get(key)

    @property
    def raw(self) -> Settings:
        """Get raw settings object"""
        return self._settings


# Initialize settings with safety wrapper
_raw_settings = Settings()
settings = SafeSettings(_raw_settings)
