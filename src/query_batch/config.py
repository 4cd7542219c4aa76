"""Query and CLI configuration.

``QueryConfig`` is the immutable per-batch value object handed to the
orchestrator. ``Settings`` carries everything the command line needs and is
layered from defaults, an INI config file, environment variables and finally
command-line flags.
"""

from __future__ import annotations

import configparser
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from common.config.env import get_env_bool, get_env_float, get_env_int, get_env_str
from query_batch.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
DEFAULT_WAIT_INTERVAL_SECONDS = 1.0
DEFAULT_HISTORY_COUNT = 50
DEFAULT_CONFIG_DIR = ".query_batch"
DEFAULT_CONFIG_FILE = "config"
DEFAULT_SECTION = "default"


class EncryptionOption(str, Enum):
    """Server- or client-side encryption applied to the result files."""

    SSE_S3 = "SSE_S3"
    SSE_KMS = "SSE_KMS"
    CSE_KMS = "CSE_KMS"


class OutputFormat(str, Enum):
    """Rendering style for query results."""

    TABLE = "table"
    CSV = "csv"


class QueryConfig(BaseModel):
    """Per-batch execution settings shared by every statement."""

    model_config = ConfigDict(frozen=True)

    database: Optional[str] = Field(None, description="Database the statements run in")
    output_location: str = Field("", description="Where the remote service writes results")
    workgroup: Optional[str] = Field(None, description="Athena workgroup")
    encryption_option: Optional[EncryptionOption] = Field(
        None, description="Encryption applied to result files"
    )
    kms_key: Optional[str] = Field(None, description="KMS key for SSE_KMS/CSE_KMS")
    concurrency: int = Field(
        DEFAULT_CONCURRENCY, ge=1, description="Maximum executions in flight at once"
    )
    ordered: bool = Field(False, description="Deliver results in submission order")
    silent: bool = Field(False, description="Suppress progress indication")
    wait_interval_seconds: float = Field(
        DEFAULT_WAIT_INTERVAL_SECONDS, gt=0, description="Delay between status polls"
    )

    def validate_for_run(self) -> None:
        """Raise ``ValidationError`` when the config cannot run statements."""
        if not self.output_location or not self.output_location.strip():
            raise ValidationError(
                "an output location is required to run queries. "
                "Specify it with --location/-l or add `location` to your config file.",
                field="output_location",
            )
        needs_key = self.encryption_option in (EncryptionOption.SSE_KMS, EncryptionOption.CSE_KMS)
        if needs_key and not self.kms_key:
            raise ValidationError(
                f"a KMS key is required for encryption option {self.encryption_option.value}",
                field="kms_key",
            )


class Settings(BaseModel):
    """Command-line settings mirroring the keys accepted in the config file."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    debug: bool = False
    silent: bool = False
    output: OutputFormat = OutputFormat.TABLE
    profile: Optional[str] = None
    region: str = "us-east-1"
    database: Optional[str] = None
    location: str = ""
    workgroup: Optional[str] = None
    encrypt: Optional[EncryptionOption] = None
    kms: Optional[str] = None
    count: int = Field(DEFAULT_HISTORY_COUNT, ge=1)
    concurrent: int = Field(DEFAULT_CONCURRENCY, ge=1)
    ordered: bool = False
    wait_interval: float = Field(DEFAULT_WAIT_INTERVAL_SECONDS, gt=0)

    def query_config(self) -> QueryConfig:
        """Build the per-batch ``QueryConfig`` from these settings."""
        return QueryConfig(
            database=self.database,
            output_location=self.location,
            workgroup=self.workgroup,
            encryption_option=self.encrypt,
            kms_key=self.kms,
            concurrency=self.concurrent,
            ordered=self.ordered,
            silent=self.silent,
            wait_interval_seconds=self.wait_interval,
        )

    def merged(self, overrides: Dict[str, Any]) -> "Settings":
        """Return a copy with non-None overrides applied and validated."""
        values = self.model_dump()
        values.update({key: value for key, value in overrides.items() if value is not None})
        return build_settings(values)


class ConfigFileError(Exception):
    """The config file or the requested section could not be read."""

    def __init__(self, path: Path, section: Optional[str], message: str) -> None:
        """Record the file path and section that failed."""
        super().__init__(message)
        self.path = path
        self.section = section


def build_settings(values: Dict[str, Any]) -> Settings:
    """Validate raw values into ``Settings``, raising ``ValidationError``."""
    try:
        return Settings(**values)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(
            f"invalid setting '{field_name}': {first.get('msg')}", field=field_name
        ) from exc


def default_config_path() -> Path:
    """Return ``~/.query_batch/config``."""
    return Path.home() / DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def load_config_file(path: Optional[str] = None, section: str = DEFAULT_SECTION) -> Dict[str, str]:
    """Read one section of the INI config file as raw string values."""
    if not section:
        raise ValueError("section name is empty")

    file_path = Path(path).expanduser() if path else default_config_path()
    logger.debug("Normalized config file path: %s", file_path)

    parser = configparser.ConfigParser()
    try:
        with file_path.open(encoding="utf-8") as handle:
            parser.read_file(handle)
    except OSError as exc:
        raise ConfigFileError(file_path, None, f"failed to load config file: {exc}") from exc
    except configparser.Error as exc:
        raise ConfigFileError(file_path, None, f"malformed config file: {exc}") from exc

    if not parser.has_section(section) and section != parser.default_section:
        raise ConfigFileError(
            file_path, section, f"failed to get section '{section}' in {file_path}"
        )
    return dict(parser[section])


def settings_from_env() -> Dict[str, Any]:
    """Collect settings overrides from environment variables."""
    return {
        "region": get_env_str("AWS_REGION"),
        "profile": get_env_str("AWS_PROFILE"),
        "database": get_env_str("ATHENA_DATABASE"),
        "location": get_env_str("ATHENA_OUTPUT_LOCATION"),
        "workgroup": get_env_str("ATHENA_WORKGROUP"),
        "concurrent": get_env_int("QUERY_BATCH_CONCURRENCY"),
        "wait_interval": get_env_float("QUERY_BATCH_WAIT_INTERVAL"),
        "silent": get_env_bool("QUERY_BATCH_SILENT"),
    }


def load_settings(
    path: Optional[str] = None,
    section: str = DEFAULT_SECTION,
    overrides: Optional[Dict[str, Any]] = None,
    *,
    on_file_error=None,
) -> Settings:
    """Layer defaults, config file, environment and explicit overrides.

    A missing or unreadable config file is not fatal: ``on_file_error`` is
    called with the ``ConfigFileError`` and loading continues without it.
    """
    settings = Settings()
    try:
        settings = settings.merged(load_config_file(path, section))
    except ConfigFileError as exc:
        logger.info("Config file skipped: %s", exc)
        if on_file_error is not None:
            on_file_error(exc)

    settings = settings.merged(settings_from_env())
    return settings.merged(overrides or {})
