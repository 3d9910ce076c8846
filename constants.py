import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# "memory" keeps membership in-process, "redis" shares it (and fan-out) across relay instances
RELAY_BACKEND = os.getenv("RELAY_BACKEND", "memory")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_KEY_TTL = int(os.getenv("REDIS_KEY_TTL", 86400))
# a relay instance counts as alive while its heartbeat key exists
REDIS_INSTANCE_TTL = int(os.getenv("REDIS_INSTANCE_TTL", 30))

CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")

DEFAULT_DISPLAY_NAME_PREFIX = "User_"
