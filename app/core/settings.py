"""
Core settings and environment variables for the incident ranking engine.
Uses pydantic-settings for type-safe environment variable loading.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Create a .env file in the root directory to configure these.
    """

    # Application
    APP_NAME: str = "Civic Incident Ranking Engine"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - Frontend URLs allowed to access this API (comma-separated)
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Firebase/Firestore
    FIREBASE_PROJECT_ID: Optional[str] = None
    FIREBASE_CREDENTIALS_PATH: Optional[str] = None  # Path to service account JSON

    # Mock DB mode for local development without Firebase credentials
    USE_MOCK_DB: bool = False
    MOCK_DB_PATH: Optional[str] = "./mock_db.json"
    TRANSACTION_MAX_ATTEMPTS: int = 5

    # Geospatial
    GEOHASH_PRECISION: int = 7  # ~153m x 153m cells
    NEIGHBORHOOD_INDEX_TTL_SECONDS: float = 300.0  # Rebuild polygon index after this long
    NEARBY_DEFAULT_RADIUS_METERS: float = 5000.0
    NEARBY_MAX_RESULTS: int = 50

    # Ranking fallbacks, used only when a municipality has no score weights configured
    DEFAULT_NEIGHBORHOOD_VOTE_WEIGHT: float = 2.0
    DEFAULT_GLOBAL_VOTE_WEIGHT: float = 1.0
    DEFAULT_DECAY_CONSTANT_DAYS: float = 30.0

    # Feed pagination
    FEED_DEFAULT_PAGE_SIZE: int = 20
    FEED_MAX_PAGE_SIZE: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"  # Allow extra env vars to prevent crashes

    @property
    def cors_origins_list(self):
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


# Global settings instance
settings = Settings()
