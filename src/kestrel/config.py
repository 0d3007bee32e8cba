# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating Kestrel configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/kestrel/  (default: ~/.config/kestrel/)
#   - Data:    $XDG_DATA_HOME/kestrel/    (default: ~/.local/share/kestrel/)
#   - Cache:   $XDG_CACHE_HOME/kestrel/   (default: ~/.cache/kestrel/)
#   - State:   $XDG_STATE_HOME/kestrel/   (default: ~/.local/state/kestrel/)
#
# Files:
#   - config.toml: User configuration (accounts, timeouts, logging)
#   - kestrel.db: SQLite mirror (in data directory)
#   - attachments/: Downloaded attachment files (in cache directory)
#   - kestrel.log: Log file (in state directory)
# =============================================================================

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w

from kestrel.core import Account, KestrelError
from kestrel.core.account import SECURITY_MODES


# =============================================================================
# XDG Directory Management
# =============================================================================

APP_NAME = "kestrel"


def _xdg_dir(env_var: str, *default: str) -> Path:
    value = os.environ.get(env_var)
    base = Path(value) if value else Path.home().joinpath(*default)
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """Returns $XDG_CONFIG_HOME/kestrel (default ~/.config/kestrel)."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_xdg_data_home() -> Path:
    """
    Returns $XDG_DATA_HOME/kestrel (default ~/.local/share/kestrel).

    This is where the SQLite mirror lives. Deleting it forces a full resync
    of every folder but loses nothing the server does not also have.
    """
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_cache_home() -> Path:
    """
    Returns $XDG_CACHE_HOME/kestrel (default ~/.cache/kestrel).

    Downloaded attachments are cached here and can be re-fetched on demand.
    """
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def get_xdg_state_home() -> Path:
    """Returns $XDG_STATE_HOME/kestrel (default ~/.local/state/kestrel)."""
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "cache": get_xdg_cache_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    (dirs["cache"] / "attachments").mkdir(exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class SyncConfig:
    """
    Network and retry settings shared by sync, dispatch and downloads.

    Attributes:
        connect_timeout: Seconds allowed for TCP connect, TLS and login.
        command_timeout: Seconds allowed for a single protocol round trip.
        max_attempts: Connection attempts (and submission attempts) before
                      a MailConnectionError is given up on.
        backoff_initial: Delay before the second attempt, in seconds.
        backoff_max: Upper bound for the doubling delay.
        batch_size: UIDs per FETCH command during a full resync.
    """
    connect_timeout: float = 30.0
    command_timeout: float = 60.0
    max_attempts: int = 3
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    batch_size: int = 50


@dataclass
class AttachmentConfig:
    """
    Attachment cache settings.

    Attributes:
        cache_dir: Override for the cache directory ("" = XDG cache).
    """
    cache_dir: str = ""


@dataclass
class DraftConfig:
    """
    Attributes:
        autosave_delay: Seconds without edits before a draft is autosaved.
    """
    autosave_delay: float = 3.0


@dataclass
class LoggingConfig:
    """
    Attributes:
        level: Log level name for the log file ("INFO", "DEBUG", ...).
        file: Override for the log file path ("" = XDG state directory).
    """
    level: str = "INFO"
    file: str = ""


@dataclass
class Config:
    """
    Main configuration container for Kestrel.

    Attributes:
        default_account: Name of the account used when none is given.
        accounts: Configured email accounts, keyed by name.
        sync: Timeouts and retry policy.
        attachments: Attachment cache settings.
        drafts: Draft autosave settings.
        logging: Log file settings.

    Usage:
        >>> config = Config.load()
        >>> config.accounts['personal'].email
        'user@example.com'
    """
    default_account: str = ""
    accounts: dict[str, Account] = field(default_factory=dict)

    sync: SyncConfig = field(default_factory=SyncConfig)
    attachments: AttachmentConfig = field(default_factory=AttachmentConfig)
    drafts: DraftConfig = field(default_factory=DraftConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        return get_xdg_data_home() / "kestrel.db"

    def attachment_cache_dir(self) -> Path:
        if self.attachments.cache_dir:
            return Path(self.attachments.cache_dir).expanduser()
        return get_xdg_cache_home() / "attachments"

    def log_file_path(self) -> Path:
        if self.logging.file:
            return Path(self.logging.file).expanduser()
        return get_xdg_state_home() / "kestrel.log"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.

        Args:
            path: Config file to read instead of the XDG default.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        ensure_directories()

        config_path = path or cls.config_file_path()
        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Write the configuration as TOML, creating directories as needed."""
        ensure_directories()

        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from parsed TOML.

        Raises:
            ConfigError: On values of the wrong type or out of range.
        """
        config = cls()

        general = data.get("general", {})
        config.default_account = general.get("default_account", "")

        sync = data.get("sync", {})
        try:
            config.sync = SyncConfig(
                connect_timeout=float(sync.get("connect_timeout", 30.0)),
                command_timeout=float(sync.get("command_timeout", 60.0)),
                max_attempts=int(sync.get("max_attempts", 3)),
                backoff_initial=float(sync.get("backoff_initial", 1.0)),
                backoff_max=float(sync.get("backoff_max", 30.0)),
                batch_size=int(sync.get("batch_size", 50)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid [sync] section: {e}") from e

        if config.sync.max_attempts < 1:
            raise ConfigError("sync.max_attempts must be at least 1")
        if config.sync.batch_size < 1:
            raise ConfigError("sync.batch_size must be at least 1")
        if config.sync.connect_timeout <= 0 or config.sync.command_timeout <= 0:
            raise ConfigError("sync timeouts must be positive")

        attachments = data.get("attachments", {})
        config.attachments = AttachmentConfig(
            cache_dir=attachments.get("cache_dir", ""),
        )

        drafts = data.get("drafts", {})
        try:
            config.drafts = DraftConfig(
                autosave_delay=float(drafts.get("autosave_delay", 3.0)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid [drafts] section: {e}") from e
        if config.drafts.autosave_delay < 0:
            raise ConfigError("drafts.autosave_delay cannot be negative")

        logging_data = data.get("logging", {})
        config.logging = LoggingConfig(
            level=str(logging_data.get("level", "INFO")).upper(),
            file=logging_data.get("file", ""),
        )

        # Accounts - each key under [accounts] is an account name
        for name, acct_data in data.get("accounts", {}).items():
            account = Account(
                name=name,
                email=acct_data.get("email", ""),
                display_name=acct_data.get("display_name", ""),
                imap_host=acct_data.get("imap_host", ""),
                imap_port=acct_data.get("imap_port", 993),
                imap_security=acct_data.get("imap_security", "ssl"),
                smtp_host=acct_data.get("smtp_host", ""),
                smtp_port=acct_data.get("smtp_port", 587),
                smtp_security=acct_data.get("smtp_security", "starttls"),
                enabled=acct_data.get("enabled", True),
            )
            validate_account(account)
            config.accounts[name] = account

        if config.default_account and config.default_account not in config.accounts:
            raise ConfigError(f"default_account '{config.default_account}' is not configured")

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {
            "general": {"default_account": self.default_account},
            "sync": {
                "connect_timeout": self.sync.connect_timeout,
                "command_timeout": self.sync.command_timeout,
                "max_attempts": self.sync.max_attempts,
                "backoff_initial": self.sync.backoff_initial,
                "backoff_max": self.sync.backoff_max,
                "batch_size": self.sync.batch_size,
            },
            "attachments": {"cache_dir": self.attachments.cache_dir},
            "drafts": {"autosave_delay": self.drafts.autosave_delay},
            "logging": {"level": self.logging.level, "file": self.logging.file},
        }

        data["accounts"] = {}
        for name, account in self.accounts.items():
            data["accounts"][name] = {
                "email": account.email,
                "display_name": account.display_name,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "smtp_host": account.smtp_host,
                "smtp_port": account.smtp_port,
                "smtp_security": account.smtp_security,
                "enabled": account.enabled,
            }

        return data


def validate_account(account: Account) -> None:
    if not account.email:
        raise ConfigError(f"Account '{account.name}' has no email address")
    for protocol in ("imap", "smtp"):
        security = getattr(account, f"{protocol}_security")
        if security not in SECURITY_MODES:
            raise ConfigError(
                f"Account '{account.name}': {protocol}_security must be one of "
                f"{', '.join(SECURITY_MODES)}, got '{security}'"
            )
        if not isinstance(getattr(account, f"{protocol}_port"), int):
            raise ConfigError(f"Account '{account.name}': {protocol}_port must be an integer")


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(KestrelError):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths(config: Config | None = None) -> None:
    """Print all XDG paths, for users wondering where their data is stored."""
    config = config or Config()
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"Cache:   {get_xdg_cache_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
    print(f"Attachments:  {config.attachment_cache_dir()}")
    print(f"Log file:     {config.log_file_path()}")
