# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    service_name: str = "media-link-resolver"
    log_level: str = "INFO"

    # Result cache
    cache_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379"
    cache_ttl_seconds: int = 20 * 24 * 60 * 60  # 20 days

    # Supported hosts (comma-separated, without "www.")
    supported_hosts: str = "instagram.com"

    # Extraction tools
    # Comma-separated tool names; order here does not matter, each tool carries its own priority
    enabled_tools: str = "yt-dlp,gallery-dl"
    cookies_path: str = "./cookies/instagram.com_cookies.txt"

    ytdlp_binary: str = "yt-dlp"
    ytdlp_timeout_seconds: float = 120.0
    ytdlp_max_output_bytes: int = 15 * 1024 * 1024
    ytdlp_strategy_delay_seconds: float = 2.0

    gallerydl_binary: str = "gallery-dl"
    gallerydl_timeout_seconds: float = 90.0
    gallerydl_max_output_bytes: int = 10 * 1024 * 1024
    gallerydl_strategy_delay_seconds: float = 1.5

    # Per-domain backoff (exponential, capped)
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000

    # Security
    allowed_origins: list[str] = ["*"]
    rate_limit_per_minute: int = 30

    # Monitoring
    metrics_token: str | None = None  # Optional token for /status (if not set, uses internal network check)
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    # SECURITY: Only set to true if behind a trusted reverse proxy
    trust_proxy_headers: bool = False

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def host_list(self) -> tuple[str, ...]:
        return tuple(
            h.strip().lower() for h in self.supported_hosts.split(",") if h.strip()
        )

    @property
    def tool_list(self) -> list[str]:
        return [t.strip().lower() for t in self.enabled_tools.split(",") if t.strip()]

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("supported_hosts", self.host_list),
            ("enabled_tools", self.tool_list),
        ]
        if self.cache_backend == "redis":
            required_fields.append(("redis_url", self.redis_url))

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.cache_backend == "memory":
        warnings.append("prod: cache_backend=memory (cache is lost on restart and not shared between replicas).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.trust_proxy_headers:
        warnings.append(
            "trust_proxy_headers=True: ensure you are behind a trusted reverse proxy, "
            "otherwise X-Forwarded-For spoofing is possible."
        )

    if not s.metrics_token:
        warnings.append(
            "metrics_token is not set: /status protection relies on internal_networks."
        )

    unknown_tools = [t for t in s.tool_list if t not in ("yt-dlp", "gallery-dl")]
    if unknown_tools:
        warnings.append(f"enabled_tools contains unknown tools that will be ignored: {unknown_tools}")

    if s.backoff_base_ms > s.backoff_max_ms:
        warnings.append("backoff_base_ms is larger than backoff_max_ms (every backoff will be capped).")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
