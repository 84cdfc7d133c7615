"""
Unit tests for configuration loading (pgbackup/config.py).
"""

import pytest

from pgbackup.config import (
    Config,
    ConfigError,
    PostgresSettings,
    StorageSettings,
    load_config
)


class TestPostgresSettings:
    """Test PostgresSettings parsing and validation."""

    def test_defaults(self):
        """Test defaults when nothing is set."""
        settings = PostgresSettings.from_env({})

        assert settings.host == 'localhost'
        assert settings.port == 5432
        assert settings.user == 'postgres'
        assert settings.database == 'postgres'
        assert settings.dump_format == 'custom'
        assert settings.compression is True
        assert settings.compression_level == 6
        assert settings.extra_args == []
        settings.validate()

    def test_from_env(self):
        """Test every variable is read from the environment."""
        settings = PostgresSettings.from_env({
            'PGHOST': 'db.example.com',
            'PGPORT': '6543',
            'PGUSER': 'ops',
            'PGPASSWORD': 'hunter2',
            'PGDATABASE': 'sales',
            'PGDUMP_FORMAT': 'Plain',
            'BACKUP_COMPRESSION': 'no',
            'PGDUMP_OPTIONS': '--no-owner  --clean',
        })

        assert settings.host == 'db.example.com'
        assert settings.port == 6543
        assert settings.password == 'hunter2'
        assert settings.dump_format == 'plain'
        assert settings.compression is False
        assert settings.extra_args == ['--no-owner', '--clean']

    @pytest.mark.parametrize("value,expected", [
        ('true', True), ('TRUE', True), ('1', True), ('yes', True), ('on', True),
        ('false', False), ('0', False), ('No', False), ('off', False),
    ])
    def test_compression_flag(self, value, expected):
        """Test accepted boolean spellings."""
        assert PostgresSettings.from_env({'BACKUP_COMPRESSION': value}).compression is expected

    def test_invalid_boolean(self):
        """Test an unparseable boolean raises ConfigError."""
        with pytest.raises(ConfigError, match="BACKUP_COMPRESSION"):
            PostgresSettings.from_env({'BACKUP_COMPRESSION': 'maybe'})

    def test_invalid_port(self):
        """Test a non-numeric port raises ConfigError."""
        with pytest.raises(ConfigError, match="PGPORT"):
            PostgresSettings.from_env({'PGPORT': 'five'})

    def test_port_out_of_range(self):
        """Test a port outside 1-65535 is rejected."""
        with pytest.raises(ConfigError, match="PGPORT"):
            PostgresSettings(port=70000).validate()

    def test_invalid_format(self):
        """Test an unknown dump format is rejected."""
        with pytest.raises(ConfigError, match="PGDUMP_FORMAT"):
            PostgresSettings(dump_format='zip').validate()

    def test_invalid_compression_level(self):
        """Test a compression level outside 1-9 is rejected."""
        with pytest.raises(ConfigError, match="BACKUP_COMPRESSION_LEVEL"):
            PostgresSettings(compression_level=10).validate()

    def test_describe_omits_password(self):
        """Test the password never appears in the summary."""
        settings = PostgresSettings(password='hunter2')

        assert 'hunter2' not in '\n'.join(settings.describe())


class TestStorageSettings:
    """Test StorageSettings parsing and validation."""

    def test_defaults_to_local(self):
        """Test storage defaults to the local /backups directory."""
        settings = StorageSettings.from_env({})

        assert settings.storage_type == 'local'
        assert settings.local_dir == '/backups'
        settings.validate()

    def test_s3_from_env(self):
        """Test S3 settings are read from the environment."""
        settings = StorageSettings.from_env({
            'STORAGE_TYPE': 'S3',
            'S3_BUCKET': 'backups',
            'S3_REGION': 'eu-west-1',
            'S3_ENDPOINT_URL': 'http://minio:9000',
            'S3_PREFIX': 'pg',
        })

        assert settings.storage_type == 's3'
        assert settings.s3_region == 'eu-west-1'
        assert settings.s3_endpoint_url == 'http://minio:9000'
        assert settings.s3_access_key is None
        assert settings.describe() == ["Storage: s3://backups/pg (http://minio:9000)"]

    def test_s3_requires_bucket(self):
        """Test S3 storage requires a bucket."""
        with pytest.raises(ConfigError, match="S3_BUCKET"):
            StorageSettings(storage_type='s3').validate()

    def test_invalid_type(self):
        """Test an unknown storage type is rejected."""
        with pytest.raises(ConfigError, match="STORAGE_TYPE"):
            StorageSettings(storage_type='ftp').validate()

    def test_describe_omits_secret_key(self):
        """Test the S3 secret key never appears in the summary."""
        settings = StorageSettings(storage_type='s3', s3_bucket='b', s3_secret_key='topsecret')

        assert 'topsecret' not in '\n'.join(settings.describe())


class TestConfig:
    """Test Config."""

    def test_defaults(self):
        """Test service defaults."""
        config = Config.from_env({})

        assert config.schedule == '0 2 * * *'
        assert config.run_on_start is False
        assert config.log_level == 'INFO'
        assert config.log_file is None
        assert config.temp_dir
        config.validate()

    def test_service_settings(self, tmp_path):
        """Test schedule, temp dir and logging settings."""
        config = Config.from_env({
            'BACKUP_SCHEDULE': '*/15 * * * *',
            'BACKUP_RUN_ON_START': 'true',
            'TEMP_DIR': str(tmp_path),
            'LOG_LEVEL': 'debug',
            'LOG_FILE': str(tmp_path / 'pgbackup.log'),
        })

        assert config.schedule == '*/15 * * * *'
        assert config.run_on_start is True
        assert config.temp_dir == str(tmp_path)
        assert config.log_level == 'DEBUG'
        config.validate()

    def test_invalid_schedule(self):
        """Test a malformed crontab expression is rejected."""
        config = Config.from_env({'BACKUP_SCHEDULE': 'every night'})

        with pytest.raises(ConfigError, match="BACKUP_SCHEDULE"):
            config.validate()

    def test_invalid_log_level(self):
        """Test an unknown log level is rejected."""
        config = Config.from_env({'LOG_LEVEL': 'LOUD'})

        with pytest.raises(ConfigError, match="LOG_LEVEL"):
            config.validate()

    def test_validate_checks_nested_settings(self):
        """Test validate() covers database and storage settings."""
        config = Config.from_env({'PGDUMP_FORMAT': 'zip'})

        with pytest.raises(ConfigError, match="PGDUMP_FORMAT"):
            config.validate()

    def test_describe(self):
        """Test the summary lines."""
        config = Config.from_env({'PGDATABASE': 'sales', 'PGPASSWORD': 'hunter2'})

        lines = config.describe()

        assert "Database: sales" in lines
        assert "Schedule: 0 2 * * * (UTC)" in lines
        assert 'hunter2' not in '\n'.join(lines)


class TestLoadConfig:
    """Test load_config with .env files."""

    def test_reads_env_file(self, tmp_path):
        """Test values are read from a .env file."""
        env_file = tmp_path / '.env'
        env_file.write_text("PGDATABASE=sales\nPGDUMP_FORMAT=tar\n# comment\nBACKUP_COMPRESSION=false\n")

        config = load_config(str(env_file), environ={})

        assert config.postgres.database == 'sales'
        assert config.postgres.dump_format == 'tar'
        assert config.postgres.compression is False

    def test_environment_overrides_env_file(self, tmp_path):
        """Test the environment takes precedence over the .env file."""
        env_file = tmp_path / '.env'
        env_file.write_text("PGDATABASE=from_file\nPGHOST=filehost\n")

        config = load_config(str(env_file), environ={'PGDATABASE': 'from_env'})

        assert config.postgres.database == 'from_env'
        assert config.postgres.host == 'filehost'

    def test_missing_env_file_is_ignored(self, tmp_path):
        """Test a missing .env file is ignored."""
        config = load_config(str(tmp_path / 'missing.env'), environ={'PGDATABASE': 'sales'})

        assert config.postgres.database == 'sales'

    def test_no_env_file(self):
        """Test loading without a .env file."""
        config = load_config(None, environ={})

        assert config.storage.storage_type == 'local'

    def test_invalid_configuration_raises(self, tmp_path):
        """Test invalid configuration raises ConfigError."""
        with pytest.raises(ConfigError):
            load_config(None, environ={'STORAGE_TYPE': 's3'})

    def test_reads_process_environment_by_default(self, clean_env, monkeypatch):
        """Test os.environ is read when no environment is given."""
        monkeypatch.setenv('PGDATABASE', 'from_process')

        config = load_config(None)

        assert config.postgres.database == 'from_process'

    def test_does_not_modify_process_environment(self, clean_env, tmp_path):
        """Test .env values are not written into os.environ."""
        import os

        env_file = tmp_path / '.env'
        env_file.write_text("PGDATABASE=from_file\n")

        load_config(str(env_file))

        assert 'PGDATABASE' not in os.environ
