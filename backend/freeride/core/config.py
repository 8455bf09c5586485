from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    ENV: str = "prod"

    DATABASE_URL: str = "sqlite:///./freeride.db"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    LOG_LEVEL: str = "INFO"

    # Free days engine
    FREE_DAYS_TIMEZONE: str = "UTC"  # zone used to read the hour of a ride
    FREE_DAYS_SWEEP_ROLE: str = "USER"
    RIDER_SEARCH_LIMIT: int = 20

settings = Settings()
