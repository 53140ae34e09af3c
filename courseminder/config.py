from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://courseminder:courseminder@db:5432/courseminder"
  app_version: str = "v2026.10.0"
  app_url: str = "http://localhost:3000"

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
  log_level: str = "INFO"
  log_json: bool = False

  reminder_sweep_enabled: bool = True
  reminder_sweep_interval_seconds: int = 120
  reminder_batch_size: int = 50
  reminder_default_channel: str = "both"  # dashboard | email | both

  delivery_batch_size: int = 20
  delivery_max_attempts: int = 3
  delivery_backoff_base_seconds: int = 60
  delivery_backoff_max_seconds: int = 3600
  delivery_lease_seconds: int = 300

  email_transport: str = "local"  # local | smtp | resend
  email_from: str = "CourseMinder <noreply@courseminder.local>"
  smtp_host: str | None = None
  smtp_port: int = 587
  smtp_username: str | None = None
  smtp_password: str | None = None
  smtp_starttls: bool = True
  resend_api_key: str | None = None
  resend_base_url: str = "https://api.resend.com"

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
