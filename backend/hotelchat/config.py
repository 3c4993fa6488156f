from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./hotelchat.db"
    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 30
    cors_origins: str = "http://localhost:3000"
    log_level: str = "INFO"
    message_max_length: int = 4000
    history_default_take: int = 100
    history_max_take: int = 200

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


class ClientSettings(BaseSettings):
    server_url: str = "ws://localhost:8000/ws/chat"
    api_url: str = "http://localhost:8000"
    reconnect_base_delay: float = 3.0
    reconnect_max_delay: float = 10.0
    reconnect_max_attempts: int = 3
    ack_timeout: float = 10.0
    # sender stops "typing" after this much idle time
    typing_idle_timeout: float = 3.0
    # receiver forgets a typing user after this much silence
    typing_quiet_period: float = 5.0
    history_take: int = 100

    class Config:
        env_prefix = "CHAT_CLIENT_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
