from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./tripengine.db"
    PGHOST: Optional[str] = None
    PGDATABASE: Optional[str] = None
    PGUSER: Optional[str] = None
    PGPASSWORD: Optional[str] = None
    PGSSLMODE: str = "require"
    
    # Application
    PROJECT_NAME: str = "Trip & Schedule Orchestration Engine"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    
    # Routing service
    ROUTING_BASE_URL: str = ""
    ROUTING_API_KEY: Optional[str] = None
    ROUTING_TIMEOUT_SECONDS: float = 5.0
    
    # Trip lifecycle
    DEFAULT_ETA_MINUTES: int = 15
    FALLBACK_LAT: float = 9.0765
    FALLBACK_LNG: float = 7.3986
    MAX_TRIP_DURATION_HOURS: int = 8
    
    # Materialization
    MATERIALIZATION_WINDOW_DAYS: int = 7
    WINDOW_SCHEDULER_INTERVAL_SECONDS: int = 3600
    WINDOW_SCHEDULER_ENABLED: bool = False
    
    # Notifications
    FANOUT_MAX_WORKERS: int = 8
    
    @property
    def database_url(self) -> str:
        if self.PGHOST and self.PGUSER and self.PGDATABASE:
            return f"postgresql://{self.PGUSER}:{self.PGPASSWORD}@{self.PGHOST}/{self.PGDATABASE}?sslmode={self.PGSSLMODE}"
        return self.DATABASE_URL
    
    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
