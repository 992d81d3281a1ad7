from typing import Annotated, TypeAlias

from pydantic import Field
from pydantic.networks import RedisDsn
from pydantic.types import SecretStr
from pydantic_settings import SettingsConfigDict

from .base import BaseCustomSettings

# port number range
PortInt: TypeAlias = Annotated[int, Field(gt=0, lt=65535)]


class RedisSettings(BaseCustomSettings):
    # host
    REDIS_SECURE: bool = False
    REDIS_HOST: str = "redis"
    REDIS_PORT: PortInt = 6379

    # auth
    REDIS_USER: str | None = None
    REDIS_PASSWORD: SecretStr | None = None

    # the coordination store of all deployments lives in a single database
    REDIS_DATABASE: Annotated[int, Field(ge=0, le=15)] = 0

    def build_redis_dsn(self) -> str:
        return str(
            RedisDsn.build(  # pylint: disable=no-member
                scheme="rediss" if self.REDIS_SECURE else "redis",
                username=self.REDIS_USER or None,
                password=(
                    self.REDIS_PASSWORD.get_secret_value()
                    if self.REDIS_PASSWORD
                    else None
                ),
                host=self.REDIS_HOST,
                port=self.REDIS_PORT,
                path=f"{self.REDIS_DATABASE}",
            )
        )

    model_config = SettingsConfigDict(
        json_schema_extra={
            "examples": [
                # minimal required
                {
                    "REDIS_USER": "user",
                    "REDIS_PASSWORD": "foobar",  # NOSONAR
                }
            ],
        }
    )
