from typing import List
from .config import Config

# Placeholder values shipped in .env.example
DEFAULT_EMAILS = [
    "your-email@gmail.com",
    "your-second-email@gmail.com",
]
DEFAULT_PASSWORDS = [
    "your-app-password-here",
]
DEFAULT_ES_PASSWORD = "changeme"


def check_default_credentials(config: Config) -> List[str]:
    """
    Check if the configuration uses default example values.
    Returns a list of error messages.
    """
    errors = []

    for account in config.email_accounts:
        if not account.enabled:
            continue
        if account.email in DEFAULT_EMAILS:
            errors.append(f"{account.account_id} is enabled but uses default email: {account.email}")
        if account.app_password in DEFAULT_PASSWORDS:
            errors.append(f"{account.account_id} is enabled but uses default password")

    if config.store.password == DEFAULT_ES_PASSWORD:
        errors.append("ELASTICSEARCH_PASSWORD still uses the example value")

    return errors
