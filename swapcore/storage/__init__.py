from .redis_config import RedisConfigSettings, RedisConfigSource

__all__ = [
    "RedisConfigSettings",
    "RedisConfigSource",
]
