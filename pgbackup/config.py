"""
Configuration for pgbackup.

Settings come from the process environment, optionally merged with a
.env file. Values already set in the environment take precedence over
the file.
"""

import os
import tempfile
from typing import Dict, List, Mapping, Optional

from apscheduler.triggers.cron import CronTrigger
from dotenv import dotenv_values


VALID_FORMATS = ('plain', 'custom', 'directory', 'tar')
VALID_STORAGE_TYPES = ('local', 's3')

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean (true/false), got: {value!r}")


def _parse_int(name: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got: {value!r}")


class PostgresSettings:
    """
    Connection and pg_dump settings for the database being backed up.

    Treated as read-only once loaded.
    """

    def __init__(
        self,
        host: str = 'localhost',
        port: int = 5432,
        user: str = 'postgres',
        password: str = '',
        database: str = 'postgres',
        dump_format: str = 'custom',
        compression: bool = True,
        dump_options: str = '',
        compression_level: int = 6,
        pg_dump_path: str = 'pg_dump',
        pg_isready_path: str = 'pg_isready'
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database
        self.dump_format = dump_format
        self.compression = compression
        self.dump_options = dump_options
        self.compression_level = compression_level
        self.pg_dump_path = pg_dump_path
        self.pg_isready_path = pg_isready_path

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> 'PostgresSettings':
        return cls(
            host=env.get('PGHOST', 'localhost'),
            port=_parse_int('PGPORT', env.get('PGPORT', '5432')),
            user=env.get('PGUSER', 'postgres'),
            password=env.get('PGPASSWORD', ''),
            database=env.get('PGDATABASE', 'postgres'),
            dump_format=env.get('PGDUMP_FORMAT', 'custom').strip().lower(),
            compression=_parse_bool('BACKUP_COMPRESSION', env.get('BACKUP_COMPRESSION', 'true')),
            dump_options=env.get('PGDUMP_OPTIONS', ''),
            compression_level=_parse_int('BACKUP_COMPRESSION_LEVEL', env.get('BACKUP_COMPRESSION_LEVEL', '6')),
            pg_dump_path=env.get('PGDUMP_PATH', 'pg_dump'),
            pg_isready_path=env.get('PG_ISREADY_PATH', 'pg_isready'),
        )

    @property
    def extra_args(self) -> List[str]:
        """PGDUMP_OPTIONS split on whitespace."""
        return self.dump_options.split()

    def validate(self):
        if self.dump_format not in VALID_FORMATS:
            raise ConfigError("PGDUMP_FORMAT must be 'plain', 'custom', 'directory', or 'tar'")
        if not 1 <= self.port <= 65535:
            raise ConfigError(f"PGPORT must be between 1 and 65535, got: {self.port}")
        if not self.database:
            raise ConfigError("PGDATABASE must not be empty")
        if not 1 <= self.compression_level <= 9:
            raise ConfigError(f"BACKUP_COMPRESSION_LEVEL must be between 1 and 9, got: {self.compression_level}")

    def describe(self) -> List[str]:
        """Operator-facing summary lines. Never includes the password."""
        return [
            f"PostgreSQL: {self.host}:{self.port}",
            f"Database: {self.database}",
            f"Format: {self.dump_format}",
            f"Compression: {self.compression}",
        ]


class StorageSettings:
    """Where finished backups are stored."""

    def __init__(
        self,
        storage_type: str = 'local',
        local_dir: str = '/backups',
        s3_bucket: str = '',
        s3_region: str = 'us-east-1',
        s3_endpoint_url: Optional[str] = None,
        s3_access_key: Optional[str] = None,
        s3_secret_key: Optional[str] = None,
        s3_prefix: str = ''
    ):
        self.storage_type = storage_type
        self.local_dir = local_dir
        self.s3_bucket = s3_bucket
        self.s3_region = s3_region
        self.s3_endpoint_url = s3_endpoint_url
        self.s3_access_key = s3_access_key
        self.s3_secret_key = s3_secret_key
        self.s3_prefix = s3_prefix

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> 'StorageSettings':
        return cls(
            storage_type=env.get('STORAGE_TYPE', 'local').strip().lower(),
            local_dir=env.get('LOCAL_BACKUP_DIR', '/backups'),
            s3_bucket=env.get('S3_BUCKET', ''),
            s3_region=env.get('S3_REGION', 'us-east-1'),
            s3_endpoint_url=env.get('S3_ENDPOINT_URL') or None,
            s3_access_key=env.get('S3_ACCESS_KEY') or None,
            s3_secret_key=env.get('S3_SECRET_KEY') or None,
            s3_prefix=env.get('S3_PREFIX', ''),
        )

    def validate(self):
        if self.storage_type not in VALID_STORAGE_TYPES:
            raise ConfigError(f"STORAGE_TYPE must be 'local' or 's3', got: {self.storage_type!r}")
        if self.storage_type == 's3' and not self.s3_bucket:
            raise ConfigError("S3_BUCKET is required when STORAGE_TYPE is 's3'")
        if self.storage_type == 'local' and not self.local_dir:
            raise ConfigError("LOCAL_BACKUP_DIR is required when STORAGE_TYPE is 'local'")

    def describe(self) -> List[str]:
        if self.storage_type == 's3':
            location = f"s3://{self.s3_bucket}/{self.s3_prefix}".rstrip('/')
            if self.s3_endpoint_url:
                location += f" ({self.s3_endpoint_url})"
            return [f"Storage: {location}"]
        return [f"Storage: local ({self.local_dir})"]


class Config:
    """Complete service configuration."""

    def __init__(
        self,
        postgres: PostgresSettings,
        storage: StorageSettings,
        schedule: str = '0 2 * * *',
        run_on_start: bool = False,
        temp_dir: Optional[str] = None,
        log_level: str = 'INFO',
        log_file: Optional[str] = None
    ):
        self.postgres = postgres
        self.storage = storage
        self.schedule = schedule
        self.run_on_start = run_on_start
        self.temp_dir = temp_dir or tempfile.gettempdir()
        self.log_level = log_level
        self.log_file = log_file

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Config':
        """
        Build configuration from an environment mapping.

        Args:
            env: Mapping to read from (defaults to os.environ)

        Raises:
            ConfigError: If a value cannot be parsed
        """
        if env is None:
            env = os.environ

        return cls(
            postgres=PostgresSettings.from_env(env),
            storage=StorageSettings.from_env(env),
            schedule=env.get('BACKUP_SCHEDULE', '0 2 * * *').strip(),
            run_on_start=_parse_bool('BACKUP_RUN_ON_START', env.get('BACKUP_RUN_ON_START', 'false')),
            temp_dir=env.get('TEMP_DIR') or None,
            log_level=env.get('LOG_LEVEL', 'INFO').strip().upper(),
            log_file=env.get('LOG_FILE') or None,
        )

    def validate(self):
        """
        Validate the full configuration.

        Raises:
            ConfigError: On the first invalid setting
        """
        self.postgres.validate()
        self.storage.validate()

        try:
            CronTrigger.from_crontab(self.schedule, timezone='UTC')
        except ValueError as e:
            raise ConfigError(f"BACKUP_SCHEDULE is not a valid crontab expression ({self.schedule!r}): {e}")

        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigError(f"LOG_LEVEL is not a valid logging level: {self.log_level!r}")

    def describe(self) -> List[str]:
        return self.postgres.describe() + self.storage.describe() + [
            f"Schedule: {self.schedule} (UTC)",
            f"Run on start: {self.run_on_start}",
        ]


def load_config(env_file: Optional[str] = '.env', environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load and validate configuration.

    Args:
        env_file: Optional .env file; missing files are ignored
        environ: Environment to read (defaults to os.environ)

    Returns:
        Validated Config

    Raises:
        ConfigError: If configuration is invalid
    """
    if environ is None:
        environ = os.environ

    merged: Dict[str, str] = {}
    if env_file and os.path.isfile(env_file):
        merged.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    merged.update(environ)

    config = Config.from_env(merged)
    config.validate()
    return config
