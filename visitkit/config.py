import os
from pathlib import Path
from typing import List
from dotenv import load_dotenv

from visitkit.schemas import EngineSettings

# Load environment variables from .env file
load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Config:
    """Application configuration."""

    # Data Configuration
    # Default to data directory in project root if not specified
    try:
        _config_file = Path(__file__).resolve()
        _project_root = _config_file.parent.parent  # visitkit/config.py -> project root
        _default_data_dir = _project_root / "data"
    except (NameError, AttributeError):
        # Fallback if __file__ not available
        _default_data_dir = Path.cwd() / "data"

    DATA_DIR: Path = Path(os.getenv("DATA_DIR", str(_default_data_dir)))

    # Environment
    ENV: str = os.getenv("ENV", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Shared secret for the batch recompute job (scheduler -> recompute-all)
    LAB_KIT_RECOMMENDATION_JOB_TOKEN: str = os.getenv("LAB_KIT_RECOMMENDATION_JOB_TOKEN", "")

    # Forecast horizon (days)
    DEFAULT_DAYS_AHEAD: int = int(os.getenv("DEFAULT_DAYS_AHEAD", "60"))
    MAX_DAYS_AHEAD: int = int(os.getenv("MAX_DAYS_AHEAD", "180"))

    # Study statuses swept by recompute-all when the caller sends none
    DEFAULT_STUDY_STATUSES: List[str] = _split_csv(
        os.getenv("DEFAULT_STUDY_STATUSES", "enrolling,active")
    )

    # Compliance percentage at or above which a cycle counts as compliant
    DEFAULT_COMPLIANCE_THRESHOLD: float = float(os.getenv("DEFAULT_COMPLIANCE_THRESHOLD", "80"))

    # Scheduled trigger -> batch endpoint
    CRON_BASE_URL: str = os.getenv("CRON_BASE_URL", "http://localhost:8000")
    CRON_TIMEOUT_SECS: int = int(os.getenv("CRON_TIMEOUT_SECS", "300"))

    @classmethod
    def engine_settings(cls) -> EngineSettings:
        """Build the settings object injected into the recompute engine."""
        return EngineSettings(
            default_days_ahead=cls.DEFAULT_DAYS_AHEAD,
            max_days_ahead=cls.MAX_DAYS_AHEAD,
            default_study_statuses=cls.DEFAULT_STUDY_STATUSES or ["enrolling", "active"],
            default_compliance_threshold=cls.DEFAULT_COMPLIANCE_THRESHOLD,
        )

    @classmethod
    def validate(cls) -> None:
        """Validate required configuration."""
        if not cls.LAB_KIT_RECOMMENDATION_JOB_TOKEN:
            raise ValueError("LAB_KIT_RECOMMENDATION_JOB_TOKEN is required for the batch recompute job")
        if cls.DEFAULT_DAYS_AHEAD < 1 or cls.DEFAULT_DAYS_AHEAD > cls.MAX_DAYS_AHEAD:
            raise ValueError(
                f"DEFAULT_DAYS_AHEAD must be between 1 and MAX_DAYS_AHEAD ({cls.MAX_DAYS_AHEAD})"
            )
