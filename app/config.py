"""Application configuration settings."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    db_host: str = "localhost"
    db_port: int = 3306
    db_user: str = "sqlite"
    db_password: str = ""
    db_name: str = "timeoff"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 3600

    # Application Settings
    debug: bool = False
    log_level: str = "INFO"
    api_prefix: str = "/api"

    # Request Policy
    min_advance_days: int = 60
    max_advance_days: int = 120
    max_days_per_request: int = 4
    flight_number_pattern: str = r"^TB\d{1,4}[A-Z]?$"
    custom_message_max_length: int = 500

    # Email Content
    scheduling_email: str = "scheduling@example.com"
    email_subject_template: str = "{CODE} CREW REQUEST - {MONTH_NAME} {YEAR}"
    email_body_template: str = "Dear,\n\n{REQUEST_LINES}\n\n{CUSTOM_MESSAGE}\n\n{SIGNATURE}"
    email_day_off_label: str = "REQ DO"
    email_pm_off_label: str = "REQ PM OFF"
    email_am_off_label: str = "REQ AM OFF"
    email_flight_label: str = "REQ FLIGHT"

    # Mail Transport
    gmail_api_base_url: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    mail_timeout_seconds: float = 10.0

    # Reply Ingestion
    reply_lookback_days: int = 90
    reply_snippet_length: int = 500
    reply_check_interval_minutes: int = 0

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def database_url(self) -> str:
        """Construct database URL from configuration."""
        # Use SQLite if DB_USER is 'sqlite'
        if self.db_user.lower() == 'sqlite':
            return f"sqlite:///./{self.db_name}.db"
        return f"mysql+pymysql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug


# Global settings instance
settings = Settings()
