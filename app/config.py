from pydantic_settings import BaseSettings
from typing import Optional

class Settings(BaseSettings):
    environment: str = "development"

    # Storage
    storage_backend: str = "postgres"  # postgres | memory
    database_url: Optional[str] = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    db_command_timeout: int = 60

    # AWS SES
    aws_region: str = "us-east-1"
    from_email: str = "no-reply@fussionflux.com"
    from_name: str = "Fussion Flux"
    support_email: str = "support@fussionflux.com"
    ses_configuration_set: Optional[str] = None

    # Unsubscribe links
    frontend_url: str = "https://fussionflux.com"
    unsubscribe_secret: str  # required; signs unsubscribe links
    unsubscribe_token_ttl_days: int = 30

    # Compliance footer
    company_name: str = "Fussion Flux"
    company_address: str = "123 Marketing St, Tech City, TC 12345"
    preferences_url: str = "https://fussionflux.com/preferences"

    # Campaign sending
    dispatch_concurrency: int = 5
    email_delivery: str = "ses"  # ses | log

    class Config:
        env_file = ".env"
        extra = "ignore"  # This line allows extra env vars without errors

settings = Settings()
