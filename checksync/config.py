from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_FAMILIES = ("php-fpm", "go-expvar")


class Settings(BaseSettings):
    app_name: str = Field(default="checksync")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=4000)
    advertise_address: str = Field(default="127.0.0.1")
    shutdown_grace_seconds: int = Field(default=5)
    metrics_enabled: bool = Field(default=True)

    consul_http_addr: str = Field(default="http://127.0.0.1:8500")
    consul_http_token: str = Field(default="")
    consul_timeout_seconds: int = Field(default=5)
    discovery_interval_seconds: float = Field(default=5.0)

    enabled_families: str = Field(default="php-fpm,go-expvar")
    php_fpm_config_file: str = Field(default="/etc/dd-agent/conf.d/php_fpm.yaml")
    go_expvar_config_file: str = Field(
        default="/etc/dd-agent/conf.d/go_expvar.yaml",
        validation_alias=AliasChoices("go_expvar_config_file", "go_expr_config_file"),
    )

    remote_config_path: str = Field(default="/datadog/expvar")
    remote_config_ttl_seconds: int = Field(default=1800)
    remote_config_timeout_seconds: int = Field(default=5)

    dont_reload_datadog: bool = Field(default=False)
    datadog_service_command: str = Field(default="/usr/sbin/service")
    datadog_service_name: str = Field(default="datadog-agent")
    reload_timeout_seconds: int = Field(default=30)

    fastcgi_timeout_seconds: float = Field(default=5.0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def families(self) -> list[str]:
        return [item.strip() for item in self.enabled_families.split(",") if item.strip()]

    def config_file_for(self, family: str) -> str:
        if family == "php-fpm":
            return self.php_fpm_config_file
        if family == "go-expvar":
            return self.go_expvar_config_file
        raise KeyError(family)

    @model_validator(mode="after")
    def validate_runtime(self) -> "Settings":
        issues: list[str] = []
        unknown = [item for item in self.families if item not in KNOWN_FAMILIES]
        if unknown:
            issues.append(
                f"ENABLED_FAMILIES contains unknown families: {', '.join(unknown)} "
                f"(known: {', '.join(KNOWN_FAMILIES)})."
            )
        if not 1 <= self.server_port <= 65535:
            issues.append("SERVER_PORT must be between 1 and 65535.")
        if self.discovery_interval_seconds <= 0:
            issues.append("DISCOVERY_INTERVAL_SECONDS must be positive.")
        if self.remote_config_ttl_seconds <= 0:
            issues.append("REMOTE_CONFIG_TTL_SECONDS must be positive.")
        if not self.remote_config_path.startswith("/"):
            issues.append("REMOTE_CONFIG_PATH must start with '/'.")
        if issues:
            raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
