"""
Configuration loading for snapship.

Settings are resolved once per invocation with the precedence:

    explicit value (CLI flag) > process environment > .env file > default

The resolved Settings object is immutable and is passed down to the
pipeline; nothing in the backup package reads the environment itself.
"""

import os
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple

from dotenv import dotenv_values

if TYPE_CHECKING:
    from snapship.backup.compression import CodecKind


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


DEFAULT_CONSUL_ADDRESS = 'http://127.0.0.1:8500'
DEFAULT_ETCD_ENDPOINT = 'http://127.0.0.1:2379'
DEFAULT_REGION = 'us-east-1'
DEFAULT_DIAL_TIMEOUT = '5s'

# Field name -> environment variable
ENV_VARS = {
    'dir_paths': 'DIRS_TO_BACKUP',
    'file_paths': 'FILES_TO_BACKUP',
    'exclude_patterns': 'EXCLUDE_PATTERNS',
    'compress_method': 'COMPRESS_METHOD',
    'endpoint': 'OSS_ENDPOINT',
    'access_key': 'OSS_ACCESS_KEY',
    'secret_key': 'OSS_SECRET_KEY',
    'bucket': 'OSS_BUCKET',
    'object_prefix': 'OSS_OBJECT_PREFIX',
    'region': 'OSS_REGION',
    'consul_address': 'CONSUL_ADDRESS',
    'consul_token': 'CONSUL_TOKEN',
    'consul_stale': 'CONSUL_STALE',
    'etcd_endpoints': 'ETCD_ENDPOINTS',
    'etcd_cacert': 'ETCD_CACERT',
    'etcd_cert': 'ETCD_CERT',
    'etcd_key': 'ETCD_KEY',
    'etcd_user': 'ETCD_USER',
    'etcd_password': 'ETCD_PASSWORD',
    'etcd_dial_timeout': 'ETCD_DIAL_TIMEOUT',
    'etcd_command_timeout': 'ETCD_COMMAND_TIMEOUT',
    'temp_dir': 'SNAPSHIP_TEMP_DIR',
}

# Flag shown to the operator for each required destination setting
_DESTINATION_HINTS = {
    'endpoint': ('--endpoint', 'OSS_ENDPOINT'),
    'access_key': ('--access-key', 'OSS_ACCESS_KEY'),
    'secret_key': ('--secret-key', 'OSS_SECRET_KEY'),
    'bucket': ('--bucket', 'OSS_BUCKET'),
}

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|h|m|s)')
_DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one invocation."""

    codec: "CodecKind"
    dir_paths: Tuple[str, ...] = ()
    file_paths: Tuple[str, ...] = ()
    exclude_patterns: Tuple[str, ...] = ()
    endpoint: str = ''
    access_key: str = ''
    secret_key: str = ''
    bucket: str = ''
    object_prefix: str = ''
    region: str = DEFAULT_REGION
    consul_address: str = DEFAULT_CONSUL_ADDRESS
    consul_token: str = ''
    consul_stale: bool = False
    etcd_endpoints: Tuple[str, ...] = (DEFAULT_ETCD_ENDPOINT,)
    etcd_cacert: str = ''
    etcd_cert: str = ''
    etcd_key: str = ''
    etcd_user: str = ''
    etcd_password: str = field(default='', repr=False)
    etcd_dial_timeout: float = 5.0
    etcd_command_timeout: Optional[float] = None
    temp_dir: Optional[str] = None

    def validate_destination(self):
        """
        Check that the object storage coordinates are complete.

        Raises:
            ConfigurationError: Naming the first missing setting
        """
        for name, (flag, env_var) in _DESTINATION_HINTS.items():
            if not getattr(self, name):
                raise ConfigurationError(
                    f"{name.replace('_', ' ')} is not set (use {flag} or the {env_var} environment variable)"
                )

    def validate_dirs(self):
        if not self.dir_paths:
            raise ConfigurationError(
                "No directories to back up (use --path or DIRS_TO_BACKUP, comma separated)"
            )
        self.validate_destination()

    def validate_files(self):
        if not self.file_paths:
            raise ConfigurationError(
                "No files to back up (use --path or FILES_TO_BACKUP, comma separated)"
            )
        self.validate_destination()


def split_list(value: Optional[str]) -> Tuple[str, ...]:
    """Split a comma separated value, dropping blank items."""
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(',') if item.strip())


def parse_duration(value: str) -> float:
    """
    Parse a duration such as '20s', '1m30s', '500ms' or '15' into seconds.

    Raises:
        ConfigurationError: If the value is not a valid duration
    """
    text = str(value).strip()
    if not text:
        raise ConfigurationError("Empty duration")

    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text) or position == 0:
        raise ConfigurationError(f"Invalid duration: {value!r} (expected e.g. 20s, 1m30s, 500ms)")
    return total


def _parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ('true', '1', 'yes')


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """
    Resolve Settings from explicit values, the environment and a .env file.

    Args:
        overrides: Explicit values keyed by Settings field name (or
            'compress_method'). None and empty values count as unset.
        env_file: Path to a .env file. Defaults to ./.env; a missing file is
            not an error.
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Immutable Settings instance

    Raises:
        ConfigurationError: If a value cannot be parsed (codec, duration)
    """
    from snapship.backup.compression import parse_codec

    overrides = overrides or {}
    environ = os.environ if environ is None else environ

    dotenv_path = env_file or os.path.join(os.getcwd(), '.env')
    file_values = {k: v for k, v in dotenv_values(dotenv_path).items() if v is not None}

    def resolve(name: str, default: Any = '') -> Any:
        explicit = overrides.get(name)
        if explicit not in (None, '', (), []):
            return explicit
        env_var = ENV_VARS[name]
        if environ.get(env_var):
            return environ[env_var]
        if file_values.get(env_var):
            return file_values[env_var]
        return default

    def resolve_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
        value = resolve(name)
        if isinstance(value, (list, tuple)):
            items = tuple(str(v).strip() for v in value if str(v).strip())
        else:
            items = split_list(value)
        return items or default

    stale = resolve('consul_stale', False)
    command_timeout = resolve('etcd_command_timeout')

    return Settings(
        codec=parse_codec(resolve('compress_method', 'zstd')),
        dir_paths=resolve_list('dir_paths'),
        file_paths=resolve_list('file_paths'),
        exclude_patterns=resolve_list('exclude_patterns'),
        endpoint=resolve('endpoint'),
        access_key=resolve('access_key'),
        secret_key=resolve('secret_key'),
        bucket=resolve('bucket'),
        object_prefix=resolve('object_prefix'),
        region=resolve('region', DEFAULT_REGION),
        consul_address=resolve('consul_address', DEFAULT_CONSUL_ADDRESS),
        consul_token=resolve('consul_token'),
        consul_stale=stale if isinstance(stale, bool) else _parse_bool(stale),
        etcd_endpoints=resolve_list('etcd_endpoints', (DEFAULT_ETCD_ENDPOINT,)),
        etcd_cacert=resolve('etcd_cacert'),
        etcd_cert=resolve('etcd_cert'),
        etcd_key=resolve('etcd_key'),
        etcd_user=resolve('etcd_user'),
        etcd_password=resolve('etcd_password'),
        etcd_dial_timeout=parse_duration(resolve('etcd_dial_timeout', DEFAULT_DIAL_TIMEOUT)),
        etcd_command_timeout=parse_duration(command_timeout) if command_timeout else None,
        temp_dir=resolve('temp_dir', None),
    )
