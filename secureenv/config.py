"""
Configuration for SecureEnv.

Sources, highest priority first:
1. Command-line options (--store, -p/--project, -e/--environment)
2. Environment variables (SECUREENV_*)
3. Project file (.secureenv.yaml in the current directory or a parent)
4. Defaults (~/.secureenv/store.db)
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from . import crypto
from .errors import ConfigurationError, ValidationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".secureenv.yaml"

HOME_ENV_VAR = "SECUREENV_HOME"
STORE_ENV_VAR = "SECUREENV_STORE"
PASSPHRASE_ENV_VAR = "SECUREENV_PASSPHRASE"
NO_KEYCHAIN_ENV_VAR = "SECUREENV_NO_KEYCHAIN"
SCRYPT_N_ENV_VAR = "SECUREENV_SCRYPT_N"

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


# =============================================================================
# Paths and environment
# =============================================================================

def get_home() -> Path:
    """SECUREENV_HOME, or ~/.secureenv."""
    env_home = os.environ.get(HOME_ENV_VAR)
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path.home() / ".secureenv"


def default_store_path() -> Path:
    """SECUREENV_STORE, or <home>/store.db."""
    env_store = os.environ.get(STORE_ENV_VAR)
    if env_store:
        return Path(env_store).expanduser().resolve()
    return get_home() / "store.db"


def passphrase_from_env() -> Optional[str]:
    """Passphrase for non-interactive use (CI); None when unset or empty."""
    return os.environ.get(PASSPHRASE_ENV_VAR) or None


def keychain_disabled() -> bool:
    return os.environ.get(NO_KEYCHAIN_ENV_VAR, "").strip().lower() in ("1", "true", "yes", "on")


def load_kdf_params() -> Dict[str, int]:
    """
    scrypt parameters for new stores and bundles.

    SECUREENV_SCRYPT_N overrides the cost; existing stores always keep
    the parameters they were created with.
    """
    params = crypto.default_kdf_params()
    override = os.environ.get(SCRYPT_N_ENV_VAR)
    if override:
        try:
            params["N"] = int(override)
        except ValueError as e:
            raise ValidationError(f"{SCRYPT_N_ENV_VAR} must be an integer") from e
    return crypto.validate_kdf_params(params)


def configure_logging(verbose: bool = False) -> None:
    """Log to stderr: WARNING by default, DEBUG when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


# =============================================================================
# Project file
# =============================================================================

class ProjectConfig(BaseModel):
    """Defaults for -p/--project and -e/--environment."""

    model_config = ConfigDict(extra="ignore")

    project: Optional[str] = None
    environment: Optional[str] = None


def find_project_config(start: Optional[Path] = None) -> Optional[Path]:
    """Walk up from `start` (default: cwd) looking for .secureenv.yaml."""
    directory = Path(start or Path.cwd()).resolve()
    for candidate in (directory, *directory.parents):
        path = candidate / CONFIG_FILENAME
        if path.is_file():
            return path
    return None


def load_project_config(path: Path) -> ProjectConfig:
    """
    Load a project file.

    Raises:
        ConfigurationError: Unreadable file, invalid YAML or bad fields
    """
    try:
        with open(path, encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    try:
        return ProjectConfig.model_validate(content or {})
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def save_project_config(config: ProjectConfig, directory: Optional[Path] = None) -> Path:
    """Write .secureenv.yaml into `directory` (default: cwd)."""
    path = Path(directory or Path.cwd()) / CONFIG_FILENAME
    try:
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write {path}: {e}") from e
    logger.debug(f"Wrote {path}")
    return path


class ConfigResolver:
    """Resolves project/environment from CLI arguments, then the project file."""

    def __init__(self, config: Optional[ProjectConfig] = None, path: Optional[Path] = None):
        self.config = config
        self.path = path

    @classmethod
    def discover(cls, start: Optional[Path] = None) -> "ConfigResolver":
        path = find_project_config(start)
        if path is None:
            return cls()
        return cls(load_project_config(path), path)

    def project(self, cli_arg: Optional[str] = None, required: bool = True) -> Optional[str]:
        if cli_arg:
            return cli_arg
        value = self.config.project if self.config else None
        if value is None and required:
            raise ValidationError(
                f"No project specified. Use -p/--project or create a {CONFIG_FILENAME} file"
            )
        return value

    def environment(self, cli_arg: Optional[str] = None, required: bool = True) -> Optional[str]:
        if cli_arg:
            return cli_arg
        value = self.config.environment if self.config else None
        if value is None and required:
            raise ValidationError(
                f"No environment specified. Use -e/--environment or create a {CONFIG_FILENAME} file"
            )
        return value
