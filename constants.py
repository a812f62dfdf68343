import os
import uuid

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# Upper bound for a single send to one recipient before it is treated as stalled
DELIVERY_TIMEOUT_SECONDS = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", 5.0))

SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", 86400))
MAX_CHAT_LENGTH = int(os.getenv("MAX_CHAT_LENGTH", 4000))

RELAY_BROKER_ENABLED = os.getenv("RELAY_BROKER_ENABLED", "false").lower() in ("1", "true", "yes")
INSTANCE_ID = os.getenv("INSTANCE_ID") or uuid.uuid4().hex
