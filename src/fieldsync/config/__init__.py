"""fieldsync configuration.

Settings come from FIELDSYNC_* environment variables (and .env), or from a
YAML file passed on the command line.

Usage:
    from fieldsync.config import load_settings

    settings = load_settings(Path("fieldsync.yaml"))
    print(settings.database_path)
"""

from functools import lru_cache
from pathlib import Path

from fieldsync.config.settings import Settings

__all__ = ["Settings", "get_settings", "load_settings"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings built from the environment.

    Call get_settings.cache_clear() to re-read the environment.
    """
    return Settings()


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from a YAML file when given, else from the environment.

    Raises:
        FileNotFoundError: If config_path does not exist
        ValueError: If the file is not a mapping or holds invalid values
    """
    if config_path is None:
        return get_settings()
    return Settings.from_yaml(config_path)
