"""Engine settings loaded from the environment.

Variables use the EXPERIMENTS_ prefix, e.g. EXPERIMENTS_EDITOR_SECRET.
A local .env file is read when present.
"""

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EXPERIMENTS_",
        env_file=".env",
        extra="ignore",
    )

    # HMAC key for visual-editor links; there is no fallback
    editor_secret: SecretStr | None = None
