"""
Snapshot sources for backup operations.

Supports:
- ConsulSource: Consul raft snapshot via the HTTP API (/v1/snapshot)
- EtcdSource: etcd v3 snapshot via the gRPC gateway (/v3/maintenance/snapshot)

A source streams the raw snapshot into a file object supplied by the
executor and returns metadata whose position token is only ever logged.
"""

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, List, Optional

import requests

from snapship.config import ConfigurationError, Settings
from .verify import check_etcd_snapshot, inspect_consul_snapshot

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024
DEFAULT_CONNECT_TIMEOUT = 10.0


class AcquisitionError(Exception):
    """Raised when a snapshot cannot be obtained from its source."""
    pass


@dataclass
class SnapshotMetadata:
    """What a source reports about the snapshot it produced."""
    position: str


class Deadline:
    """Overall time limit for one acquisition; None means unlimited."""

    def __init__(self, seconds: Optional[float]):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds if seconds else None

    def check(self):
        if self._expires is not None and time.monotonic() > self._expires:
            raise AcquisitionError(f"Snapshot acquisition timed out after {self.seconds:g}s")


def _with_scheme(address: str) -> str:
    address = address.strip().rstrip('/')
    if '://' not in address:
        address = f"http://{address}"
    return address


class SnapshotSource:
    """Base class for network snapshot sources."""

    kind = 'snapshot'

    def acquire(self, destination: BinaryIO) -> SnapshotMetadata:
        raise NotImplementedError

    def inspect(self, path: str) -> Dict[str, Any]:
        """Structural check of a saved snapshot; returns details for logging."""
        return {}

    def cleanup(self):
        """Release connections."""
        pass


class ConsulSource(SnapshotSource):
    """
    Handler for Consul snapshots.

    Streams the gzip'd snapshot archive from the agent's HTTP API.
    """

    kind = 'consul'

    def __init__(self, address: str, token: str = '', stale: bool = False,
                 session: Optional[requests.Session] = None):
        """
        Initialize Consul source handler.

        Args:
            address: Consul HTTP address, e.g. http://127.0.0.1:8500
            token: ACL token (optional)
            stale: Allow any server, not only the leader, to answer
            session: requests session to use (one is created if omitted)
        """
        self.address = _with_scheme(address)
        self.token = token
        self.stale = stale
        self.session = session or requests.Session()

    def acquire(self, destination: BinaryIO) -> SnapshotMetadata:
        """
        Stream a snapshot into destination.

        Raises:
            AcquisitionError: If the request fails or times out
        """
        url = f"{self.address}/v1/snapshot"
        params = {'stale': ''} if self.stale else {}
        headers = {'X-Consul-Token': self.token} if self.token else {}

        logger.info(f"Requesting Consul snapshot from {self.address}")
        try:
            response = self.session.get(
                url, params=params, headers=headers, stream=True,
                timeout=(DEFAULT_CONNECT_TIMEOUT, None)
            )
            with response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=STREAM_CHUNK_SIZE):
                    if chunk:
                        destination.write(chunk)
                index = response.headers.get('X-Consul-Index', '')
        except requests.RequestException as e:
            raise AcquisitionError(f"Failed to get Consul snapshot: {e}") from e
        except OSError as e:
            raise AcquisitionError(f"Failed to write Consul snapshot: {e}") from e

        logger.info(f"Consul snapshot received (last_index={index})")
        return SnapshotMetadata(position=index)

    def inspect(self, path: str) -> Dict[str, Any]:
        info = inspect_consul_snapshot(path)
        return {'id': info.id, 'index': info.index, 'term': info.term, 'version': info.version}

    def cleanup(self):
        self.session.close()


class EtcdSource(SnapshotSource):
    """
    Handler for etcd v3 snapshots.

    Talks to a single member through the JSON gRPC gateway. The snapshot
    stream is a sequence of JSON messages carrying base64 blobs; the last
    bytes of the stream are the SHA-256 of the database.
    """

    kind = 'etcd'

    def __init__(self, endpoints: List[str], cacert: str = '', cert: str = '', key: str = '',
                 user: str = '', password: str = '', dial_timeout: float = 5.0,
                 command_timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize etcd source handler.

        Args:
            endpoints: Exactly one member endpoint
            cacert: CA bundle used to verify the server (optional)
            cert: Client certificate file (optional, needs key)
            key: Client private key file (optional, needs cert)
            user: etcd user name (optional)
            password: etcd password (optional)
            dial_timeout: Connection timeout in seconds
            command_timeout: Overall acquisition deadline in seconds (optional)

        Raises:
            ConfigurationError: If not exactly one endpoint is given
        """
        if len(endpoints) != 1:
            raise ConfigurationError(
                f"etcd snapshot must be requested from exactly one endpoint, got {len(endpoints)}: {', '.join(endpoints)}"
            )
        self.endpoint = _with_scheme(endpoints[0])
        self.user = user
        self.password = password
        self.dial_timeout = dial_timeout
        self.command_timeout = command_timeout

        self.session = session or requests.Session()
        if cacert:
            self.session.verify = cacert
        if cert and key:
            self.session.cert = (cert, key)

    def _timeout(self):
        return (self.dial_timeout, self.command_timeout)

    def _authenticate(self) -> Dict[str, str]:
        if not (self.user and self.password):
            return {}
        response = self.session.post(
            f"{self.endpoint}/v3/auth/authenticate",
            json={'name': self.user, 'password': self.password},
            timeout=self._timeout()
        )
        response.raise_for_status()
        return {'Authorization': response.json()['token']}

    def _server_version(self) -> str:
        try:
            response = self.session.get(f"{self.endpoint}/version", timeout=self._timeout())
            response.raise_for_status()
            return response.json().get('etcdserver', '')
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Could not read etcd server version: {e}")
            return ''

    def acquire(self, destination: BinaryIO) -> SnapshotMetadata:
        """
        Stream a snapshot into destination.

        Raises:
            AcquisitionError: If the request fails, the stream carries an
                error, or the deadline passes
        """
        deadline = Deadline(self.command_timeout)
        logger.info(f"Requesting etcd snapshot from {self.endpoint}")

        try:
            headers = self._authenticate()
            version = self._server_version()
            response = self.session.post(
                f"{self.endpoint}/v3/maintenance/snapshot",
                json={}, headers=headers, stream=True, timeout=self._timeout()
            )
            with response:
                response.raise_for_status()
                received = 0
                for line in response.iter_lines():
                    deadline.check()
                    if not line:
                        continue
                    received += self._write_message(line, destination)
        except requests.RequestException as e:
            raise AcquisitionError(f"Failed to save etcd snapshot: {e}") from e
        except (KeyError, ValueError, binascii.Error) as e:
            raise AcquisitionError(f"Malformed etcd snapshot stream: {e}") from e
        except OSError as e:
            raise AcquisitionError(f"Failed to write etcd snapshot: {e}") from e

        logger.info(f"etcd snapshot received ({received} bytes, version={version})")
        return SnapshotMetadata(position=version)

    @staticmethod
    def _write_message(line: bytes, destination: BinaryIO) -> int:
        message = json.loads(line)
        if 'error' in message:
            error = message['error']
            detail = error.get('message', error) if isinstance(error, dict) else error
            raise AcquisitionError(f"etcd snapshot stream error: {detail}")
        blob = base64.b64decode(message['result'].get('blob', ''))
        destination.write(blob)
        return len(blob)

    def inspect(self, path: str) -> Dict[str, Any]:
        status = check_etcd_snapshot(path)
        return {'size': status.size, 'page_size': status.page_size, 'has_hash': status.has_hash}

    def cleanup(self):
        self.session.close()


def create_source(source_type: str, settings: Settings) -> SnapshotSource:
    """
    Factory function to create the appropriate snapshot source.

    Args:
        source_type: 'consul' or 'etcd'
        settings: Resolved settings

    Returns:
        ConsulSource or EtcdSource instance

    Raises:
        ConfigurationError: If source_type is invalid or its settings are
    """
    if source_type == 'consul':
        return ConsulSource(
            address=settings.consul_address,
            token=settings.consul_token,
            stale=settings.consul_stale,
        )
    elif source_type == 'etcd':
        return EtcdSource(
            endpoints=list(settings.etcd_endpoints),
            cacert=settings.etcd_cacert,
            cert=settings.etcd_cert,
            key=settings.etcd_key,
            user=settings.etcd_user,
            password=settings.etcd_password,
            dial_timeout=settings.etcd_dial_timeout,
            command_timeout=settings.etcd_command_timeout,
        )
    else:
        raise ConfigurationError(f"Invalid source type: {source_type}")
