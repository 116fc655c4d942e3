"""
Unit tests for artifact naming and key layout (snapship/backup/keys.py).
"""

from datetime import date, datetime
from unittest.mock import MagicMock, patch

import pytest
import requests

from snapship.backup.compression import CodecKind
from snapship.backup.keys import (
    build_key,
    build_prefix,
    directory_name,
    directory_token,
    file_list_name,
    format_timestamp,
    lookup_public_ip,
    single_file_name,
    snapshot_name,
)


class TestBuildPrefix:
    """Test object key prefixes."""

    @pytest.mark.parametrize("user_prefix,ip,expected", [
        ("", "1.2.3.4", "1.2.3.4/20250101/"),
        ("", None, "20250101/"),
        ("backups", "1.2.3.4", "backups/1.2.3.4/20250101/"),
        ("backups/", "1.2.3.4", "backups/1.2.3.4/20250101/"),
        ("backups//", None, "backups/20250101/"),
        (None, "", "20250101/"),
        ("a//b", None, "a/b/20250101/"),
        ("//a///b//", "1.2.3.4", "/a/b/1.2.3.4/20250101/"),
    ])
    def test_prefix_layout(self, user_prefix, ip, expected):
        assert build_prefix(user_prefix, ip, date(2025, 1, 1)) == expected

    def test_prefix_never_doubles_separator(self):
        prefix = build_prefix("nightly//db///", "10.0.0.1", date(2025, 1, 1))

        assert prefix == "nightly/db/10.0.0.1/20250101/"
        assert "//" not in prefix

    def test_prefix_accepts_formatted_date(self):
        assert build_prefix("p", None, "20250101") == "p/20250101/"

    def test_key_never_doubles_separator(self):
        key = build_key(build_prefix("a/b/", "10.0.0.1", date(2025, 1, 1)), "/tmp/work/x.zst")

        assert key == "a/b/10.0.0.1/20250101/x.zst"
        assert "//" not in key


class TestArtifactNames:
    """Test local artifact naming rules."""

    TS = "20250115-123045"

    def test_timestamp_format(self):
        assert format_timestamp(datetime(2025, 1, 15, 12, 30, 45)) == self.TS

    def test_single_file_name(self):
        assert single_file_name(self.TS, "/etc/app/config.yaml", CodecKind.ZSTD) == f"{self.TS}_config.zst"
        assert single_file_name(self.TS, "/etc/hosts", CodecKind.STORE) == f"{self.TS}_hosts"

    def test_file_list_name(self):
        name = file_list_name(self.TS, ["/etc/a.conf", "/etc/b.conf"], CodecKind.GZIP)

        assert name == f"{self.TS}_a_files.tgz"

    def test_directory_name(self):
        assert directory_name(self.TS, "/var/lib/app/", CodecKind.ZSTD) == f"{self.TS}_var_lib_app.tar.zst"

    def test_directory_token_fallback(self):
        assert directory_token("/") == "backup"

    @pytest.mark.parametrize("kind,expected", [
        ("consul", "consul-snapshot-20250115-123045.snap"),
        ("etcd", "etcd-snapshot-20250115-123045.db"),
    ])
    def test_snapshot_name(self, kind, expected):
        assert snapshot_name(kind, self.TS) == expected


class TestLookupPublicIP:
    """Test best-effort public IP discovery."""

    @patch('snapship.backup.keys.requests.get')
    def test_first_service_answers(self, mock_get):
        response = MagicMock()
        response.text = "203.0.113.7\n"
        mock_get.return_value = response

        result = lookup_public_ip(services=["https://ip.example"])

        assert result.ip == "203.0.113.7"
        assert result.warning is None

    @patch('snapship.backup.keys.requests.get')
    def test_falls_back_to_next_service(self, mock_get):
        good = MagicMock()
        good.text = "198.51.100.2"
        mock_get.side_effect = [requests.ConnectionError("down"), good]

        result = lookup_public_ip(services=["https://a.example", "https://b.example"])

        assert result.ip == "198.51.100.2"

    @patch('snapship.backup.keys.requests.get')
    def test_failure_returns_warning(self, mock_get):
        """Test that lookup failures never raise."""
        bad = MagicMock()
        bad.text = "<html>not an ip</html>"
        mock_get.side_effect = [requests.Timeout("slow"), bad]

        result = lookup_public_ip(services=["https://a.example", "https://b.example"])

        assert result.ip is None
        assert "Failed to resolve public IP" in result.warning
        assert "https://a.example" in result.warning
