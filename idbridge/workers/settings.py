from arq.connections import RedisSettings

from idbridge.config import get_settings

RECOVERY_QUEUE = "arq:recovery"


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(str(get_settings().redis_url))
