"""
Unit tests for configuration loading (snapship/config.py).
"""

import pytest

from snapship.backup.compression import CodecKind
from snapship.config import (
    DEFAULT_CONSUL_ADDRESS,
    DEFAULT_ETCD_ENDPOINT,
    ConfigurationError,
    Settings,
    load_settings,
    parse_duration,
    split_list,
)

DESTINATION_ENV = {
    'OSS_ENDPOINT': 'oss-cn-hangzhou.aliyuncs.com',
    'OSS_ACCESS_KEY': 'ak',
    'OSS_SECRET_KEY': 'sk',
    'OSS_BUCKET': 'backups',
}


@pytest.fixture
def no_env_file(tmp_path):
    return str(tmp_path / 'missing.env')


class TestLoadSettings:
    """Test settings resolution and precedence."""

    def test_defaults(self, no_env_file):
        settings = load_settings(env_file=no_env_file, environ={})

        assert settings.codec is CodecKind.ZSTD
        assert settings.region == 'us-east-1'
        assert settings.consul_address == DEFAULT_CONSUL_ADDRESS
        assert settings.consul_stale is False
        assert settings.etcd_endpoints == (DEFAULT_ETCD_ENDPOINT,)
        assert settings.etcd_dial_timeout == 5.0
        assert settings.etcd_command_timeout is None
        assert settings.temp_dir is None

    def test_environment_values(self, no_env_file):
        environ = dict(DESTINATION_ENV, DIRS_TO_BACKUP='/etc, ,/var/lib/app,', COMPRESS_METHOD='gzip',
                       CONSUL_STALE='true', ETCD_COMMAND_TIMEOUT='2m')

        settings = load_settings(env_file=no_env_file, environ=environ)

        assert settings.dir_paths == ('/etc', '/var/lib/app')
        assert settings.codec is CodecKind.GZIP
        assert settings.bucket == 'backups'
        assert settings.consul_stale is True
        assert settings.etcd_command_timeout == 120.0

    def test_env_file_fills_gaps(self, tmp_path):
        """Test that .env values apply only where the environment is silent."""
        env_file = tmp_path / '.env'
        env_file.write_text('OSS_BUCKET=from-file\nOSS_REGION=oss-cn-beijing\n')

        settings = load_settings(env_file=str(env_file), environ={'OSS_BUCKET': 'from-env'})

        assert settings.bucket == 'from-env'
        assert settings.region == 'oss-cn-beijing'

    def test_explicit_values_win(self, no_env_file):
        settings = load_settings(
            {'bucket': 'from-flag', 'compress_method': 'store', 'dir_paths': '/srv'},
            env_file=no_env_file,
            environ={'OSS_BUCKET': 'from-env', 'COMPRESS_METHOD': 'gzip', 'DIRS_TO_BACKUP': '/etc'},
        )

        assert settings.bucket == 'from-flag'
        assert settings.codec is CodecKind.STORE
        assert settings.dir_paths == ('/srv',)

    def test_unset_explicit_values_fall_through(self, no_env_file):
        """Test that None and empty flags do not mask the environment."""
        settings = load_settings(
            {'bucket': None, 'object_prefix': '', 'exclude_patterns': None},
            env_file=no_env_file,
            environ={'OSS_BUCKET': 'from-env', 'OSS_OBJECT_PREFIX': 'nightly', 'EXCLUDE_PATTERNS': '*.log'},
        )

        assert settings.bucket == 'from-env'
        assert settings.object_prefix == 'nightly'
        assert settings.exclude_patterns == ('*.log',)

    def test_invalid_codec_rejected(self, no_env_file):
        with pytest.raises(ConfigurationError, match="Supported methods: store, gzip, zstd"):
            load_settings(env_file=no_env_file, environ={'COMPRESS_METHOD': 'lz4'})

    def test_invalid_duration_rejected(self, no_env_file):
        with pytest.raises(ConfigurationError, match="Invalid duration"):
            load_settings(env_file=no_env_file, environ={'ETCD_DIAL_TIMEOUT': 'soon'})

    def test_password_hidden_from_repr(self, no_env_file):
        settings = load_settings(env_file=no_env_file, environ={'ETCD_PASSWORD': 'hunter2'})

        assert settings.etcd_password == 'hunter2'
        assert 'hunter2' not in repr(settings)


class TestValidation:
    """Test Settings validation helpers."""

    def test_complete_destination(self, no_env_file):
        load_settings(env_file=no_env_file, environ=DESTINATION_ENV).validate_destination()

    @pytest.mark.parametrize("missing,flag,env_var", [
        ('OSS_ENDPOINT', '--endpoint', 'OSS_ENDPOINT'),
        ('OSS_ACCESS_KEY', '--access-key', 'OSS_ACCESS_KEY'),
        ('OSS_SECRET_KEY', '--secret-key', 'OSS_SECRET_KEY'),
        ('OSS_BUCKET', '--bucket', 'OSS_BUCKET'),
    ])
    def test_missing_destination_setting(self, no_env_file, missing, flag, env_var):
        environ = {k: v for k, v in DESTINATION_ENV.items() if k != missing}
        settings = load_settings(env_file=no_env_file, environ=environ)

        with pytest.raises(ConfigurationError) as exc_info:
            settings.validate_destination()

        assert flag in str(exc_info.value)
        assert env_var in str(exc_info.value)

    def test_validate_dirs_requires_paths(self):
        with pytest.raises(ConfigurationError, match="No directories to back up"):
            Settings(codec=CodecKind.ZSTD).validate_dirs()

    def test_validate_files_requires_paths(self):
        with pytest.raises(ConfigurationError, match="No files to back up"):
            Settings(codec=CodecKind.ZSTD).validate_files()


class TestHelpers:
    """Test list and duration parsing."""

    def test_split_list(self):
        assert split_list(' a ,b,, c ') == ('a', 'b', 'c')
        assert split_list('') == ()
        assert split_list(None) == ()

    @pytest.mark.parametrize("value,expected", [
        ('20s', 20.0),
        ('1m30s', 90.0),
        ('500ms', 0.5),
        ('1h', 3600.0),
        ('15', 15.0),
        ('2.5', 2.5),
    ])
    def test_parse_duration(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ['', 'abc', '5x', 's5', '10s junk'])
    def test_parse_duration_invalid(self, value):
        with pytest.raises(ConfigurationError):
            parse_duration(value)
