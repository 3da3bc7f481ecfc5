from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "PKI Platform"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Certificate Authority store (unset means the current working directory)
    CAPATH: Optional[str] = None
    CA_TEST_MODE: bool = False

    # Keys
    DEFAULT_KEY_BIT_SIZE: int = 2048


settings = Settings()
