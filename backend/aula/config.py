import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

SEVEN_DAYS_SECONDS = 60 * 60 * 24 * 7


class Settings(BaseSettings):
    environment: Literal["development", "production"] = Field("development", alias="AULA_ENV")
    supabase_url: Optional[str] = Field(None, alias="SUPABASE_URL")
    supabase_anon_key: Optional[str] = Field(None, alias="SUPABASE_ANON_KEY")
    supabase_service_role_key: Optional[str] = Field(None, alias="SUPABASE_SERVICE_ROLE_KEY")
    cookie_max_age: int = Field(SEVEN_DAYS_SECONDS, alias="AULA_COOKIE_MAX_AGE")
    storage_mode: Literal["memory", "file", "database"] = Field("memory", alias="AULA_STORAGE_MODE")
    storage_path: str = Field("data/local_storage.json", alias="AULA_STORAGE_PATH")
    database_url: Optional[str] = Field(None, alias="AULA_DATABASE_URL")
    database_echo: bool = Field(False, alias="AULA_DATABASE_ECHO")
    signin_path: str = Field("/signin", alias="AULA_SIGNIN_PATH")
    register_path: str = Field("/register", alias="AULA_REGISTER_PATH")
    onboarding_path: str = Field("/onboarding/level", alias="AULA_ONBOARDING_PATH")
    topics_path: str = Field("/onboarding/topics", alias="AULA_TOPICS_PATH")
    home_path: str = Field("/dashboard", alias="AULA_HOME_PATH")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
