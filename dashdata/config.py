"""Settings base for dashdata components.

Every component declares its own ``Settings`` subclass next to the code that
uses it. Values come from keyword arguments first, then ``DASHDATA_*``
environment variables, then a ``.env`` file, then the field defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DASHDATA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow",
        arbitrary_types_allowed=True,
        validate_default=True,
        protected_namespaces=("model_", "settings_"),
    )


class AppSettings(Settings):
    """Application level settings."""

    name: str = Field(default="dashdata", description="Application name")
    debug: bool = Field(default=False, description="Enable debug behaviour")
    deployed: bool = Field(default=False, description="Running in production")
