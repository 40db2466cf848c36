"""Configuration settings for the storefront client."""
from pydantic_settings import BaseSettings
from pydantic import Field
from dotenv import load_dotenv

# Ensure .env values are loaded into os.environ before settings are read.
load_dotenv()


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    api_base_url: str = Field(default="https://a-kart-backend.onrender.com", alias="API_BASE_URL")
    # Hard connect/read timeout for every API call, in seconds
    api_timeout: float = Field(default=30.0, alias="API_TIMEOUT")
    # JSON document backing the persistent key-value store
    storage_path: str = Field(default=".shopsync/storage.json", alias="STORAGE_PATH")
    # Pause between the cart refresh and the remount during an app refresh
    refresh_settle_delay: float = Field(default=1.0, alias="REFRESH_SETTLE_DELAY")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    project_name: str = "shopsync"

    class Config:
        env_file = ".env"
        case_sensitive = False
        populate_by_name = True


settings = Settings()
