"""
Application configuration using Pydantic Settings.
Manages all environment variables and settings.
"""
from enum import Enum
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator


class Environment(str, Enum):
    """Application environment modes."""
    DEV = "DEV"
    PRODUCTION = "PRODUCTION"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    environment: Environment = Field(
        default=Environment.DEV,
        description="Application environment: DEV or PRODUCTION"
    )

    # Application
    app_name: str = Field(default="FileVault")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    @model_validator(mode='after')
    def set_debug_from_environment(self):
        """Set debug mode based on environment if not explicitly set via environment variable."""
        # DEBUG 환경 변수가 명시적으로 설정되지 않은 경우에만 환경 모드에 따라 설정
        import os
        if 'DEBUG' not in os.environ:
            self.debug = self.environment == Environment.DEV
        return self

    @property
    def is_dev(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    # Logging
    log_dir: str = Field(default="/var/log/filevault", description="NDJSON 로그 디렉터리")
    log_to_file: bool = Field(default=True, description="False면 stdout/stderr 로그만 사용")
    # 인스턴스 식별용 사설 IP (로그·메트릭용). 비우면 hostname 사용
    instance_ip: str = Field(default="", description="서버 사설 IP (비우면 hostname)")
    node_name: str = Field(default="", description="Node/Pod identifier for Prometheus labels")

    # In-memory cache (파일 목록 등 메타데이터 조회용)
    cache_default_ttl_seconds: float = Field(default=300, description="기본 TTL (초)")
    cache_cleanup_interval_seconds: float = Field(default=60, description="만료 항목 정리 주기 (초)")

    # Chunked upload sessions
    # 세션은 생성 시각 기준으로 만료됨 (업로드 활동과 무관)
    upload_session_timeout_seconds: float = Field(default=30 * 60, description="업로드 세션 최대 수명 (초)")
    upload_cleanup_interval_seconds: float = Field(default=5 * 60, description="만료 세션 정리 주기 (초)")
    upload_default_chunk_size: int = Field(default=5 * 1024 * 1024, description="클라이언트 권장 청크 크기 (bytes)")

    # File validation
    upload_max_file_size: int = Field(default=10 * 1024 * 1024, description="최대 파일 크기 (bytes)")
    upload_max_filename_length: int = Field(default=255)

    @field_validator(
        "cache_default_ttl_seconds",
        "cache_cleanup_interval_seconds",
        "upload_session_timeout_seconds",
        "upload_cleanup_interval_seconds",
        "upload_default_chunk_size",
        "upload_max_file_size",
        "upload_max_filename_length",
    )
    @classmethod
    def require_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    # Prometheus Pushgateway: 설정 시 주기적으로 메트릭 전송
    prometheus_pushgateway_url: str = Field(
        default="",
        description="Prometheus Pushgateway URL (e.g. http://pushgateway:9091). 비우면 푸시 안 함.",
    )
    prometheus_push_interval_seconds: int = Field(
        default=30,
        description="Pushgateway로 메트릭 전송 주기(초). prometheus_pushgateway_url 설정 시에만 사용.",
    )

    @field_validator("prometheus_push_interval_seconds", mode="before")
    @classmethod
    def coerce_push_interval(cls, v: object) -> int:
        if v is None or v == "":
            return 30
        return int(v)

    class Config:
        # 환경변수만 사용 (.env 파일 미사용)
        env_file = None
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Using lru_cache to avoid reading the environment on every call.
    """
    return Settings()
