"""Tests for nido.ports module."""

from __future__ import annotations

import socket
from unittest.mock import patch

import pytest

from nido.exceptions import ExhaustedError
from nido.ports import find_available_port, is_port_available


@pytest.fixture
def held_port():
    """A loopback port that stays bound for the duration of the test."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestIsPortAvailable:
    def test_bound_port_is_unavailable(self, held_port):
        assert is_port_available(held_port) is False

    def test_free_port_is_available(self):
        assert is_port_available(_free_port()) is True

    def test_opens_reusable_listener(self):
        with patch("nido.ports.socket.socket") as sock_cls, patch("nido.ports.os.name", "posix"):
            sock = sock_cls.return_value.__enter__.return_value
            assert is_port_available(50022) is True
        sock.setsockopt.assert_called_once_with(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind.assert_called_once_with(("127.0.0.1", 50022))
        sock.listen.assert_called_once_with(1)

    def test_no_reuseaddr_on_windows(self):
        with patch("nido.ports.socket.socket") as sock_cls, patch("nido.ports.os.name", "nt"):
            sock = sock_cls.return_value.__enter__.return_value
            assert is_port_available(50022) is True
        sock.setsockopt.assert_not_called()

    def test_listen_failure_is_unavailable(self):
        with patch("nido.ports.socket.socket") as sock_cls:
            sock_cls.return_value.__enter__.return_value.listen.side_effect = OSError("in use")
            assert is_port_available(50022) is False


class TestFindAvailablePort:
    def test_returns_start_when_free(self):
        port = _free_port()
        assert find_available_port(port, port) == port

    def test_skips_reserved(self):
        port = _free_port()
        with pytest.raises(ExhaustedError):
            find_available_port(port, port, reserved={port})

    def test_skips_bound_port(self, held_port):
        with pytest.raises(ExhaustedError, match=f"{held_port}-{held_port}"):
            find_available_port(held_port, held_port)

    def test_result_within_range_and_not_reserved(self, held_port):
        start = max(1024, held_port - 5)
        end = held_port + 5
        reserved = {start}
        port = find_available_port(start, end, reserved)
        assert start <= port <= end
        assert port not in reserved
        assert port != held_port

    def test_empty_range(self):
        with pytest.raises(ExhaustedError):
            find_available_port(50010, 50000)
