"""
Artifact naming and object key layout.

Remote keys follow ``[<prefix>/][<public-ip>/]<YYYYMMDD>/<artifact-name>``.
Artifact names start with a ``YYYYMMDD-HHMMSS`` timestamp so sequential
runs never reuse a temporary name.
"""

import ipaddress
import os
from datetime import date, datetime
from typing import List, NamedTuple, Optional, Sequence, Union

import requests

from .compression import CodecKind, suffix_for

TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'
DATE_FORMAT = '%Y%m%d'
SEPARATOR = '/'

PUBLIC_IP_SERVICES = (
    'https://api.ipify.org',
    'https://ifconfig.me/ip',
    'https://icanhazip.com',
)


class IPLookup(NamedTuple):
    """Result of a best-effort public IP lookup."""
    ip: Optional[str]
    warning: Optional[str] = None


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def format_date(moment: Union[date, datetime, str]) -> str:
    if isinstance(moment, str):
        return moment
    return moment.strftime(DATE_FORMAT)


def build_prefix(user_prefix: Optional[str], public_ip: Optional[str], day: Union[date, datetime, str]) -> str:
    """
    Build the object key prefix for an artifact.

    Args:
        user_prefix: Operator supplied prefix, may be empty
        public_ip: Resolved public IP, or empty when unavailable
        day: Date of the backup (or an already formatted YYYYMMDD string)

    Returns:
        Prefix ending in a single '/', e.g. 'backups/1.2.3.4/20250101/'
    """
    raw = user_prefix or ''
    # Collapse repeated separators; a leading one is kept
    prefix = SEPARATOR.join(part for part in raw.split(SEPARATOR) if part)
    if prefix:
        prefix = (SEPARATOR if raw.startswith(SEPARATOR) else '') + prefix + SEPARATOR
    if public_ip:
        prefix += public_ip + SEPARATOR
    return prefix + format_date(day) + SEPARATOR


def build_key(prefix: str, artifact_name: str) -> str:
    return prefix + os.path.basename(artifact_name)


def sanitize_token(name: str) -> str:
    """Replace anything but letters, digits, '.', '-' and '_' with '_'."""
    return ''.join(c if c.isalnum() or c in ('-', '_', '.') else '_' for c in name)


def _stem(path: str) -> str:
    return os.path.splitext(os.path.basename(path.rstrip(SEPARATOR)))[0]


def single_file_name(timestamp: str, source_path: str, codec: CodecKind) -> str:
    """'<timestamp>_<stem><suffix>' for a file compressed on its own."""
    return f"{timestamp}_{sanitize_token(_stem(source_path))}{suffix_for(codec)}"


def file_list_name(timestamp: str, source_paths: Sequence[str], codec: CodecKind) -> str:
    """'<timestamp>_<first-stem>_files<suffix>' for a multi-file container."""
    first = sanitize_token(_stem(source_paths[0]))
    return f"{timestamp}_{first}_files{suffix_for(codec, container=True)}"


def directory_token(dir_path: str) -> str:
    """Turn '/var/lib/app/' into 'var_lib_app'; an empty result becomes 'backup'."""
    token = dir_path.replace(os.sep, SEPARATOR).strip(SEPARATOR).replace(SEPARATOR, '_')
    return token or 'backup'


def directory_name(timestamp: str, dir_path: str, codec: CodecKind) -> str:
    return f"{timestamp}_{directory_token(dir_path)}{suffix_for(codec, container=True)}"


def snapshot_name(source_kind: str, timestamp: str) -> str:
    """Raw snapshot file name, e.g. 'consul-snapshot-20250101-120000.snap'."""
    extension = '.db' if source_kind == 'etcd' else '.snap'
    return f"{source_kind}-snapshot-{timestamp}{extension}"


def lookup_public_ip(services: Sequence[str] = PUBLIC_IP_SERVICES, timeout: float = 5.0) -> IPLookup:
    """
    Resolve this host's public IP address.

    Never raises: every failure is folded into the returned warning so a
    backup can continue with a key that has no IP segment.
    """
    errors: List[str] = []
    for url in services:
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
            candidate = response.text.strip()
            ipaddress.ip_address(candidate)
            return IPLookup(candidate)
        except (requests.RequestException, ValueError) as e:
            errors.append(f"{url}: {e}")

    detail = '; '.join(errors) or 'no lookup services configured'
    return IPLookup(None, f"Failed to resolve public IP ({detail})")
