import os
from pydantic_settings import BaseSettings


def get_default_database_url() -> str:
    """Get default database URL based on environment."""
    if os.environ.get("DATABASE_URL"):
        return os.environ.get("DATABASE_URL")
    # Serverless environments only allow writes under /tmp
    if os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME"):
        return "sqlite:////tmp/raw_feeding_calculator.db"
    return "sqlite:///./raw_feeding_calculator.db"


class Settings(BaseSettings):
    APP_NAME: str = "Raw Feeding Ratio Calculator API"
    DATABASE_URL: str = get_default_database_url()
    LOG_LEVEL: str = "INFO"

    # Allowed distance of a custom ratio's total from 100
    RATIO_TOLERANCE: float = 5.0
    # Total grams of the synthetic sample shown when no ingredients exist
    DEMO_SAMPLE_WEIGHT: float = 100.0

    class Config:
        env_file = ".env"


settings = Settings()
