from .application import ApplicationSettings, LogLevel, StoreBackend
from .base import BaseCustomSettings
from .redis import RedisSettings

__all__: tuple[str, ...] = (
    "ApplicationSettings",
    "BaseCustomSettings",
    "LogLevel",
    "RedisSettings",
    "StoreBackend",
)
