from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./pushline.db"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis, only used when REGISTRY_BACKEND=redis.
    # Set to empty string to disable Redis (registry falls back to in-memory).
    REDIS_URL: str = "redis://localhost:6379/0"

    # Deployment identity, used to namespace Redis keys.
    SERVER_DOMAIN: str = "localhost"

    # Where push subscriptions live: "sql", "redis" or "memory"
    REGISTRY_BACKEND: str = "sql"

    # Web Push (VAPID). Generate with: npx web-push generate-vapid-keys
    VAPID_PRIVATE_KEY: str = ""
    VAPID_PUBLIC_KEY: str = ""
    VAPID_CLAIMS_EMAIL: str = "mailto:admin@localhost"

    # Push delivery
    PUSH_TTL: int = 86_400  # seconds the push service may hold an undelivered message
    PUSH_PAYLOAD_MAX_BYTES: int = 3993  # 4 KB record minus aes128gcm overhead
    DISPATCH_CONCURRENCY: int = 50
    DISPATCH_TIMEOUT_SECONDS: float = 30.0  # 0 disables the overall timeout

    # Payload broadcast by POST /api/notifications {"send": true}
    BROADCAST_TITLE: str = "Push Demo"
    BROADCAST_BODY: str = "This is a test notification!"

    # Bearer token guarding operator endpoints. Empty = open (dev).
    OPERATOR_TOKEN: str = ""

    # Installability manifest
    APP_NAME: str = "pushline"
    APP_SHORT_NAME: str = "pushline"
    APP_THEME_COLOR: str = "#000000"
    APP_BACKGROUND_COLOR: str = "#ffffff"

    model_config = {"env_file": ".env"}


settings = Settings()
