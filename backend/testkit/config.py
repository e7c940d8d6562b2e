"""Application configuration.

Settings come from environment variables (``TESTKIT_`` prefix), a ``.env``
file, and optionally a YAML settings file:

    databases:
      default:
        url: postgresql+psycopg://app@localhost/app
        test:
          metadata: myapp.models:Base.metadata
      replica:
        url: postgresql+psycopg://app@replica/app
        test:
          mirror: default
    test_runner: discover

No YAML file = a single SQLite ``default`` database.
"""

import logging
import os
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from testkit.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

DEFAULT_DB_ALIAS = "default"


class TestDatabaseSettings(BaseModel):
    """Per-alias options that only apply while tests run."""

    __test__ = False  # not a pytest test class

    name: str | None = None  # default: "test_" + database name
    mirror: str | None = None  # alias whose test database this one reuses
    dependencies: list[str] | None = None  # None = depend on default
    create_db: bool = True
    serialize: bool = True
    template: str | None = None  # PostgreSQL TEMPLATE
    charset: str | None = None  # PostgreSQL ENCODING
    collation: str | None = None  # rejected by PostgreSQL
    metadata: str | None = None  # "module:attr" of a SQLAlchemy MetaData


class DatabaseSettings(BaseModel):
    """A single database alias."""

    url: str
    echo: bool = False
    test: TestDatabaseSettings = TestDatabaseSettings()


def _default_databases() -> dict[str, DatabaseSettings]:
    return {DEFAULT_DB_ALIAS: DatabaseSettings(url="sqlite:///db.sqlite3")}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TESTKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    databases: dict[str, DatabaseSettings] = _default_databases()
    test_runner: str = "discover"
    debug: bool = False

    @model_validator(mode="after")
    def _validate(self):
        if self.databases and DEFAULT_DB_ALIAS not in self.databases:
            raise ValueError(f"You must define a '{DEFAULT_DB_ALIAS}' database")
        for alias, db in self.databases.items():
            if db.test.mirror == alias:
                raise ValueError(f"Database '{alias}' cannot mirror itself")
        return self

    def database_settings_dicts(self) -> dict[str, dict]:
        """Return mutable per-alias settings dicts for the connection handler."""
        return {
            alias: db.model_dump() for alias, db in self.databases.items()
        }


_DEFAULT_FILENAME = "testkit.yaml"


def _settings_path(path: Path | None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get("TESTKIT_SETTINGS_FILE")
    if env_path:
        return Path(env_path)
    return Path.cwd() / _DEFAULT_FILENAME


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from a YAML file on top of environment variables.

    Falls back to environment/defaults if the file doesn't exist.

    Raises:
        ImproperlyConfigured: If the file content fails validation.
    """
    config_path = _settings_path(path)

    # .env next to the YAML file may hold database credentials
    load_dotenv(config_path.parent / ".env", override=False)

    if not config_path.exists():
        logger.info("No settings file found at %s, using defaults", config_path)
        try:
            return Settings()
        except ValueError as e:
            raise ImproperlyConfigured(f"Invalid settings from the environment: {e}") from e

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    try:
        settings = Settings(**raw)
    except ValueError as e:
        raise ImproperlyConfigured(f"Invalid settings in {config_path}: {e}") from e

    logger.info(
        "Loaded settings from %s: %d database(s), runner=%s",
        config_path,
        len(settings.databases),
        settings.test_runner,
    )
    return settings


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Settings | None) -> None:
    """Replace the cached settings (None = reload on next access)."""
    global _settings
    _settings = settings
