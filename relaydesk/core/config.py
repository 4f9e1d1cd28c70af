from functools import lru_cache
from urllib.parse import quote_plus

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "Relay Desk"
    database_url: str = Field(
        default="sqlite+aiosqlite:///./relaydesk.db",
        description="SQLAlchemy database URL",
    )
    mysql_host: str | None = Field(
        default=None,
        description="MySQL host",
        validation_alias="RELAY_DESK_MYSQL_HOST",
    )
    mysql_port: int = Field(
        default=3306,
        description="MySQL port",
        validation_alias="RELAY_DESK_MYSQL_PORT",
    )
    mysql_username: str | None = Field(
        default=None,
        description="MySQL username",
        validation_alias="RELAY_DESK_MYSQL_USER",
    )
    mysql_password: str | None = Field(
        default=None,
        description="MySQL password",
        validation_alias="RELAY_DESK_MYSQL_PASSWORD",
    )
    mysql_database: str | None = Field(
        default=None,
        description="MySQL database name",
        validation_alias="RELAY_DESK_MYSQL_DATABASE",
    )
    bcrypt_rounds: int = Field(
        default=12,
        ge=4,
        le=31,
        description="Work factor used when hashing new passwords",
        validation_alias="RELAY_DESK_BCRYPT_ROUNDS",
    )
    webhook_url: str | None = Field(
        default=None,
        description="Fallback webhook URL used when no database setting resolves",
        validation_alias=AliasChoices("RELAY_DESK_WEBHOOK_URL", "WEBHOOK_URL"),
    )
    webhook_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound for a single outbound webhook attempt",
        validation_alias="RELAY_DESK_WEBHOOK_TIMEOUT",
    )
    webhook_user_agent: str = Field(
        default="RelayDesk/1.0",
        description="User-Agent header sent with outbound webhooks",
        validation_alias="RELAY_DESK_WEBHOOK_USER_AGENT",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level applied to the relaydesk logger tree",
        validation_alias="RELAY_DESK_LOG_LEVEL",
    )

    @property
    def resolved_database_url(self) -> str:
        if all([self.mysql_host, self.mysql_username, self.mysql_password, self.mysql_database]):
            user = quote_plus(self.mysql_username)
            password = quote_plus(self.mysql_password)
            return (
                f"mysql+aiomysql://{user}:{password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}"
            )
        return self.database_url


@lru_cache()
def get_settings() -> Settings:
    return Settings()
