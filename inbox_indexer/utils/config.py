"""
Configuration Management Module
Handles loading and validation of environment variables and settings
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv


class ConfigurationError(ValueError):
    """Raised when required configuration is missing or malformed"""


@dataclass(frozen=True)
class MailAccount:
    """
    Identity and credentials for one mailbox.

    Immutable once loaded: the connection supervisor only ever reads it.
    """
    account_id: str
    email: str
    imap_server: str
    imap_port: int
    app_password: str
    username: str = ""
    use_ssl: bool = True
    verify_ssl: bool = True
    folders: List[str] = field(default_factory=lambda: ["INBOX"])
    enabled: bool = True

    @property
    def login_name(self) -> str:
        """Username used for LOGIN, falling back to the address"""
        return self.username or self.email


@dataclass
class ConnectionConfig:
    """Configuration for account supervision"""
    reconnect_base_delay: float
    max_reconnect_attempts: int
    health_check_interval: float
    poll_interval: float
    idle_timeout: float
    connect_timeout: float
    initial_sync_days: int


@dataclass
class IndexerConfig:
    """Configuration for the batching indexer"""
    batch_size: int
    flush_delay: float
    retry_attempts: int
    retry_base_delay: float


@dataclass
class StoreConfig:
    """Configuration for the Elasticsearch store"""
    url: str
    index: str
    username: Optional[str]
    password: Optional[str]
    verify_certs: bool
    request_timeout: float


@dataclass
class SystemConfig:
    """Configuration for system settings"""
    log_level: str
    log_file: str
    log_format: str


class Config:
    """Main configuration class"""

    # Upper bound on numbered IMAP_USER_<n> slots scanned
    MAX_ACCOUNT_SLOTS = 50

    def __init__(self, env_file: str = ".env"):
        """
        Initialize configuration from environment file

        Args:
            env_file: Path to environment file (default: .env)
        """
        load_dotenv(env_file)

        self.email_accounts = self._load_email_accounts()
        self.connection = self._load_connection_config()
        self.indexer = self._load_indexer_config()
        self.store = self._load_store_config()
        self.system = self._load_system_config()

    def _load_email_accounts(self) -> List[MailAccount]:
        """
        Load numbered account slots (IMAP_USER_1/IMAP_PASS_1, ...).

        Per-account host/port/TLS settings fall back to the shared
        IMAP_HOST/IMAP_PORT/IMAP_TLS values.
        """
        accounts = []
        shared_host = os.getenv("IMAP_HOST", "imap.gmail.com")
        shared_port = os.getenv("IMAP_PORT", "993")
        shared_tls = self._get_bool("IMAP_TLS", True)

        for slot in range(1, self.MAX_ACCOUNT_SLOTS + 1):
            user = os.getenv(f"IMAP_USER_{slot}")
            password = os.getenv(f"IMAP_PASS_{slot}")
            if not user and not password:
                continue

            accounts.append(MailAccount(
                account_id=os.getenv(f"IMAP_ID_{slot}", f"account-{slot}"),
                email=os.getenv(f"IMAP_EMAIL_{slot}", user or ""),
                imap_server=os.getenv(f"IMAP_HOST_{slot}", shared_host),
                imap_port=self._get_int(f"IMAP_PORT_{slot}", shared_port),
                app_password=password or "",
                username=user or "",
                use_ssl=self._get_bool(f"IMAP_TLS_{slot}", shared_tls),
                verify_ssl=self._get_bool(f"IMAP_VERIFY_SSL_{slot}", True),
                folders=self._parse_folders(os.getenv(f"IMAP_FOLDERS_{slot}", "INBOX")),
                enabled=self._get_bool(f"IMAP_ENABLED_{slot}", True),
            ))

        return accounts

    def _load_connection_config(self) -> ConnectionConfig:
        """Load connection supervision configuration"""
        return ConnectionConfig(
            reconnect_base_delay=self._get_float("RECONNECT_BASE_DELAY", "5"),
            max_reconnect_attempts=self._get_int("MAX_RECONNECT_ATTEMPTS", "5"),
            health_check_interval=self._get_float("HEALTH_CHECK_INTERVAL", "300"),
            poll_interval=self._get_float("POLL_INTERVAL", "30"),
            idle_timeout=self._get_float("IDLE_TIMEOUT", "120"),
            connect_timeout=self._get_float("CONNECT_TIMEOUT", "30"),
            initial_sync_days=self._get_int("INITIAL_SYNC_DAYS", "30"),
        )

    def _load_indexer_config(self) -> IndexerConfig:
        """Load batching indexer configuration"""
        return IndexerConfig(
            batch_size=self._get_int("INDEX_BATCH_SIZE", "50"),
            flush_delay=self._get_float("INDEX_FLUSH_DELAY", "5"),
            retry_attempts=self._get_int("STORE_RETRY_ATTEMPTS", "3"),
            retry_base_delay=self._get_float("STORE_RETRY_BASE_DELAY", "1"),
        )

    def _load_store_config(self) -> StoreConfig:
        """Load Elasticsearch configuration"""
        return StoreConfig(
            url=os.getenv("ELASTICSEARCH_URL", "http://localhost:9200").rstrip("/"),
            index=os.getenv("ELASTICSEARCH_INDEX", "emails"),
            username=os.getenv("ELASTICSEARCH_USERNAME") or None,
            password=os.getenv("ELASTICSEARCH_PASSWORD") or None,
            verify_certs=self._get_bool("ELASTICSEARCH_VERIFY_CERTS", True),
            request_timeout=self._get_float("ELASTICSEARCH_TIMEOUT", "30"),
        )

    def _load_system_config(self) -> SystemConfig:
        """Load system configuration"""
        return SystemConfig(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE", "logs/inbox_indexer.log"),
            log_format=os.getenv("LOG_FORMAT", "text").lower(),
        )

    @staticmethod
    def _parse_folders(value: str) -> List[str]:
        """Normalize folder string into a clean list."""
        if not value:
            return ["INBOX"]

        folders = [
            folder.strip()
            for folder in value.replace("\n", ",").split(",")
            if folder.strip()
        ]
        return folders or ["INBOX"]

    @staticmethod
    def _get_bool(key: str, default: bool = False) -> bool:
        """Convert environment variable to boolean"""
        value = os.getenv(key, str(default)).lower()
        return value in ('true', '1', 'yes', 'on')

    @staticmethod
    def _get_int(key: str, default: str) -> int:
        """Read an integer environment variable, naming the key on failure"""
        raw = os.getenv(key, default)
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{key} must be an integer, got {raw!r}")

    @staticmethod
    def _get_float(key: str, default: str) -> float:
        """Read a numeric environment variable, naming the key on failure"""
        raw = os.getenv(key, default)
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{key} must be a number, got {raw!r}")

    def validate(self) -> bool:
        """
        Validate configuration

        Only presence and range checks happen here; connectivity problems
        surface later as connection lifecycle events.

        Returns:
            True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        enabled = [account for account in self.email_accounts if account.enabled]
        if not enabled:
            raise ConfigurationError(
                "No email accounts configured. Set IMAP_USER_1 and IMAP_PASS_1."
            )

        seen_ids = set()
        for account in enabled:
            if not account.email or not account.app_password:
                raise ConfigurationError(f"Missing credentials for {account.account_id}")
            if not account.imap_server:
                raise ConfigurationError(f"Missing IMAP host for {account.account_id}")
            if account.account_id in seen_ids:
                raise ConfigurationError(f"Duplicate account id {account.account_id}")
            seen_ids.add(account.account_id)

        if self.indexer.batch_size < 1:
            raise ConfigurationError("INDEX_BATCH_SIZE must be at least 1")

        if self.connection.max_reconnect_attempts < 0:
            raise ConfigurationError("MAX_RECONNECT_ATTEMPTS cannot be negative")

        if not self.store.url:
            raise ConfigurationError("ELASTICSEARCH_URL is required")

        return True
