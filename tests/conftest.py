"""
Pytest configuration for ntpwatch tests.

Provides a local UDP responder that plays the NTP server, and a factory for
server replies built with ntplib so the decoder is checked against an
independent encoder.
"""

import asyncio
import copy
from unittest.mock import patch

import ntplib
import pytest
import pytest_asyncio

from ntpwatch.config import DEFAULT_CONFIG

# 2024-01-01T00:00:00Z in NTP-era seconds
NTP_SECONDS_2024 = 3913056000


class FakeNtpServer(asyncio.DatagramProtocol):
    """Answers every request with ``replies``, optionally after ``delay`` seconds."""

    def __init__(self) -> None:
        self.replies: list[bytes] = []
        self.delay = 0.0
        self.requests: list[bytes] = []
        self.transport = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr) -> None:
        self.requests.append(data)
        loop = asyncio.get_running_loop()
        for reply in self.replies:
            if self.delay:
                loop.call_later(self.delay, self._send, reply, addr)
            else:
                self.transport.sendto(reply, addr)

    def _send(self, reply: bytes, addr) -> None:
        if not self.transport.is_closing():
            self.transport.sendto(reply, addr)

    @property
    def port(self) -> int:
        return self.transport.get_extra_info("sockname")[1]


@pytest_asyncio.fixture
async def ntp_server():
    """Start a FakeNtpServer on an ephemeral localhost port."""
    loop = asyncio.get_running_loop()
    transport, server = await loop.create_datagram_endpoint(
        FakeNtpServer, local_addr=("127.0.0.1", 0)
    )
    yield server
    transport.close()


@pytest.fixture
def make_reply():
    """Return a factory building 48-byte NTP server replies."""

    def _make(stratum: int = 2, tx_seconds: float = NTP_SECONDS_2024) -> bytes:
        packet = ntplib.NTPPacket(version=3, mode=4, tx_timestamp=tx_seconds)
        packet.stratum = stratum
        return packet.to_data()

    return _make


@pytest.fixture
def valid_config():
    """A minimal valid config with one monitor."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["monitors"] = [{"name": "pool", "hostname": "pool.ntp.org"}]
    return config


@pytest.fixture
def fresh_state():
    """Replace scheduler state with an empty copy for the duration of a test."""
    state = {
        "last_run": None,
        "next_run": None,
        "running": False,
        "_running_since": None,
        "run_count": 0,
        "monitors": {},
        "heartbeats": {},
        "log_entries": [],
        "_log_bytes": 0,
    }
    with patch("ntpwatch.scheduler._state", state):
        yield state
