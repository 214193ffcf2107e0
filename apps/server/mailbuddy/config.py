from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    ENVIRONMENT: str = "development"
    DB_CONNECTION_STRING: str = "mongodb://localhost:27017"
    DB_NAME: str = "mailbuddy"
    JWT_SECRET: str = ""
    ALGORITHM: str = "HS256"
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    ENCRYPTION_KEY: str = ""
    FRONTEND_URL: str = ""
    MAIL_SYNC_LIST_PAGE_SIZE: int = 500
    MAIL_SYNC_STUB_BATCH_SIZE: int = 500
    MAIL_SYNC_BACKFILL_LIMIT: int = 50
    MAIL_SYNC_FETCH_BATCH_SIZE: int = 50
    MAIL_SYNC_HISTORY_MAX_RESULTS: int = 500
    MAIL_SYNC_TRANSIENT_RETRIES: int = 3
    MAIL_SYNC_AUTH_RETRIES: int = 3
    MAIL_SYNC_REQUEST_TIMEOUT_SECONDS: int = 60
    MAIL_SYNC_INTERVAL_MINUTES: int = 10
    MAIL_SYNC_MAX_ACCOUNTS_PER_RUN: int = 10

    model_config = SettingsConfigDict(env_file=".env.local")

settings = Settings()
