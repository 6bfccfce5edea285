from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Kardex"
    DATABASE_URL: str = "sqlite:///./kardex.db"

    # Auth
    SECRET_KEY: str = "change-me-in-production"
    ACCESS_TOKEN_EXPIRE_HOURS: int = 72
    DEFAULT_ADMIN_USERNAME: str = "admin"
    DEFAULT_ADMIN_PASSWORD: str = "admin"

    # Concept tags written by the audit manager
    AUDIT_QUICK_TAG: str = "AUDITORIA-RAPIDA"
    AUDIT_SESSION_TAG: str = "AUDIT-SESSION"

    MOVEMENT_LIST_LIMIT: int = 100

    model_config = {"env_file": ".env"}


settings = Settings()
