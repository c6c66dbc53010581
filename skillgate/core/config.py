from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AGENT_API_KEY = "sg-agent-dev-key"
DEFAULT_HUMAN_API_KEY = "sg-human-dev-key"
DEFAULT_SYSTEM_API_KEY = "sg-system-dev-key"
DEFAULT_CLIENT_ADDRESS_SALT = "skillgate-dev-address-salt"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="SG_", extra="ignore")

    app_name: str = "Skillgate"
    env: str = "dev"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    database_url: str = "sqlite+pysqlite:///./skillgate.db"

    skills_root: Path = Path("./skills")
    identity_path: Path = Path("./.skillgate-key.json")
    keystore_kdf: str = Field(default="moderate", description="moderate | interactive | min")

    hub_base_url: str = "http://localhost:8000"
    gateway_url: str = "http://localhost:3001"
    http_timeout_seconds: int = 30
    cli_template_allowed_hosts: str = "wttr.in,rdap.org,cloudflare-dns.com,api.github.com"

    auth_enabled: bool = True
    agent_api_key: str = DEFAULT_AGENT_API_KEY
    human_api_key: str = DEFAULT_HUMAN_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    agent_actor_id: str = "agent-001"
    human_actor_id: str = "human-001"
    system_actor_id: str = "system-001"

    # signed request protocol
    signature_max_skew_seconds: int = 300
    client_address_salt: str = DEFAULT_CLIENT_ADDRESS_SALT
    register_rate_limit: int = Field(default=20, description="registrations per client address per window")
    register_rate_window_seconds: int = 24 * 60 * 60
    stale_after_minutes: int = 30

    forum_channels: str = "general,skills,showcase,help"
    forum_title_max_chars: int = 200
    forum_body_max_chars: int = 10_000
    forum_post_rate_limit: int = 10
    forum_post_rate_window_seconds: int = 24 * 60 * 60

    # instance side
    signing_idle_timeout_seconds: int = 30 * 60
    registration_poll_delays: list[float] = Field(default_factory=lambda: [0.5, 1.0, 2.0, 4.0])

    default_auto_post_policy: str = "safe"
    risk_classifier_model: str = "Claude Haiku 4.5"
    risk_sensitive_tags: str = "sensitive,confidential,secret,financial,personal"
    risk_memory_limit: int = 20

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return
        defaults = {
            "SG_AGENT_API_KEY": (self.agent_api_key, DEFAULT_AGENT_API_KEY),
            "SG_HUMAN_API_KEY": (self.human_api_key, DEFAULT_HUMAN_API_KEY),
            "SG_SYSTEM_API_KEY": (self.system_api_key, DEFAULT_SYSTEM_API_KEY),
            "SG_CLIENT_ADDRESS_SALT": (self.client_address_salt, DEFAULT_CLIENT_ADDRESS_SALT),
        }
        unset = sorted(name for name, (value, default) in defaults.items() if value == default)
        if unset:
            raise ValueError(f"env {self.env!r} refuses built-in dev secrets; set {', '.join(unset)}")

    def forum_channel_set(self) -> frozenset[str]:
        return frozenset(item.strip() for item in self.forum_channels.split(",") if item.strip())

    def cli_template_host_set(self) -> frozenset[str]:
        return frozenset(item.strip().lower() for item in self.cli_template_allowed_hosts.split(",") if item.strip())

    def sensitive_tag_list(self) -> list[str]:
        return [item.strip() for item in self.risk_sensitive_tags.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
