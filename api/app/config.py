from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    dockback_base_url: str = "http://localhost:8080"
    dockback_history_limit: int = 200

    class Config:
        env_prefix = ""
        case_sensitive = False


settings = Settings()
