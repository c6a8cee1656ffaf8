"""
Configuration Module

This module loads the process environment and the application settings. It runs once
at process start; nothing here is reloaded while the process is alive.

Loading happens in three layers:
1. Layered ``.env`` files are merged into ``os.environ`` with python-dotenv. Variables
   that are already defined are never overwritten, so the first file that defines a
   variable wins.
2. ``Settings`` (pydantic-settings) reads the typed settings from the environment.
3. An optional, environment specific config bundle (``<CONFIG_DIR>/config-<env>.json``)
   is loaded into a read-only mapping.

The ``.env`` files are looked up in this order (highest precedence first):

- ``<DOTENV_PATH>.<env>.local``
- ``<DOTENV_PATH>.<env>``
- ``<DOTENV_PATH>.local`` (skipped when the environment is ``test`` so that tests give
  the same results for everyone)
- ``<DOTENV_PATH>``
"""

import functools
import json
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final, List, Mapping, Optional

from aiohttp import web
from dotenv import load_dotenv
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "development"
PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Application settings, read from environment variables.

    Field names map to upper case environment variables (``config_dir`` is read from
    ``CONFIG_DIR``). The environment name accepts ``NODE_ENV`` and ``APP_ENV``.
    """

    model_config = SettingsConfigDict(populate_by_name=True)

    environment: str = Field(
        DEFAULT_ENVIRONMENT,
        validation_alias=AliasChoices("node_env", "app_env"),
    )
    """
    Name of the running environment (development, test, production, ...).
    Set with NODE_ENV or APP_ENV environment variables.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging.
    Set with DEBUG=true environment variable.
    """

    config_dir: str = "config"
    """
    Directory holding the config-<env>.json bundles.
    Set with CONFIG_DIR environment variable.
    """

    dotenv_path: str = ".env"
    """
    Base path of the layered .env files.
    Set with DOTENV_PATH environment variable.
    """

    cors_origin_whitelist: Optional[str] = None
    """
    Comma separated list of origins allowed for CORS. Entries wrapped in slashes are
    regular expressions, "true"/"false" enable or disable origin reflection.
    Unset means every origin is allowed.
    Set with CORS_ORIGIN_WHITELIST environment variable.
    """

    http_port: int = Field(alias="port", default=3000)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    root_greeting: str = "Hello!"
    """
    Plain text body served on the root route.
    Set with ROOT_GREETING environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION


SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

# Keys stored on each aiohttp request.
CONTEXT_KEY: Final = "server_app.context"
REQUEST_ID_KEY: Final = "id"
REQUEST_LOG_KEY: Final = "log"
REQUEST_BODY_KEY: Final = "body"
VALIDATED_KEY: Final = "validated"


def current_environment() -> str:
    return os.environ.get("NODE_ENV") or os.environ.get("APP_ENV") or DEFAULT_ENVIRONMENT


def dotenv_files(dotenv_path: str, environment: str) -> List[Path]:
    env_path = Path(dotenv_path).resolve()
    files = [
        Path(f"{env_path}.{environment}.local"),
        Path(f"{env_path}.{environment}"),
    ]
    if environment != "test":
        files.append(Path(f"{env_path}.local"))
    files.append(env_path)
    return files


def load_environment() -> List[Path]:
    """
    Merge the layered .env files into os.environ and return the files that were loaded.

    NODE_ENV defaults to "development" and is written back to the environment.
    """
    environment = current_environment()
    os.environ.setdefault("NODE_ENV", environment)

    loaded = []
    for dotenv_file in dotenv_files(os.environ.get("DOTENV_PATH", ".env"), environment):
        if dotenv_file.is_file():
            load_dotenv(dotenv_file, override=False)
            loaded.append(dotenv_file)

    logger.debug("Loaded environment files: %s", [str(f) for f in loaded])
    return loaded


def load_settings() -> Settings:
    load_environment()
    return Settings()  # type: ignore


def config_path(settings: Settings) -> Path:
    return Path(settings.config_dir).resolve() / f"config-{settings.environment}.json"


def load_config(settings: Settings) -> Mapping[str, Any]:
    """
    Load the config bundle of the current environment.

    A missing file yields an empty bundle. The result is read-only.
    """
    path = config_path(settings)
    if not path.is_file():
        return MappingProxyType({})

    with open(path) as fd:
        data = json.load(fd)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return MappingProxyType(data)


@functools.lru_cache(maxsize=1)
def get_config() -> Mapping[str, Any]:
    """Process-wide config bundle, loaded on first use."""
    return load_config(load_settings())
