"""
ntpwatch - NTP reachability and stratum probe.

Sends one NTP client request over UDP, races the reply against a timeout and
turns the reply into an up/down result with stratum, round-trip time and the
server's transmit timestamp.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ntpwatch.constants import (
    DEFAULT_NTP_PORT,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_PORT,
    MAX_STRATUM,
    MS_PER_SECOND,
    NTP_CLIENT_REQUEST_FLAGS,
    NTP_PACKET_SIZE,
    NTP_STRATUM_OFFSET,
    NTP_TO_UNIX_EPOCH_OFFSET,
    NTP_TRANSMIT_SECONDS_OFFSET,
)

logger = logging.getLogger(__name__)

_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_TIMEOUT_MESSAGE = "NTP Timeout (No response from server)"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProbeError(Exception):
    """Base class for a failed check. ``result`` holds the written-down result."""

    result: ProbeResult | None = None


class SendError(ProbeError):
    """The request could not be transmitted (resolution, routing, socket setup)."""


class ProbeTimeoutError(ProbeError, TimeoutError):
    """No datagram arrived within the target's timeout."""


class TransportError(ProbeError):
    """Socket-level failure reported after the request was sent."""


class ParseError(ProbeError):
    """The response is too short or otherwise malformed."""


class StratumMismatchError(ProbeError):
    """The server answered with a stratum other than the expected one."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Stratum mismatch: Expected {expected}, but got {actual}")
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Target / result records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProbeTarget:
    """One resolved check target. Defaults are applied before construction."""

    hostname: str
    port: int = DEFAULT_NTP_PORT
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    expected_stratum: int | None = None
    name: str = ""

    def __post_init__(self) -> None:
        if not self.hostname or not self.hostname.strip():
            raise ValueError("hostname must not be empty")
        if not 1 <= self.port <= MAX_PORT:
            raise ValueError(f"port must be between 1 and {MAX_PORT}, got {self.port}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be greater than 0, got {self.timeout}")
        if self.expected_stratum is not None and not (
            0 <= self.expected_stratum <= MAX_STRATUM
        ):
            raise ValueError(
                f"expected_stratum must be between 0 and {MAX_STRATUM}, "
                f"got {self.expected_stratum}"
            )

    @property
    def label(self) -> str:
        return self.name or self.hostname


@dataclass
class ProbeResult:
    """
    Outcome of one check. Owned by the caller, written exactly once by
    NtpProbe.check via mark_up() or mark_down().
    """

    status: bool | None = None
    message: str = ""
    latency_ms: float | None = None
    stratum: int | None = None
    server_time: datetime | None = None
    checked_at: datetime | None = field(default=None, compare=False)

    @property
    def completed(self) -> bool:
        return self.status is not None

    def _ensure_pending(self) -> None:
        if self.completed:
            raise RuntimeError("ProbeResult has already been written")

    def mark_up(
        self,
        message: str,
        latency_ms: float,
        stratum: int,
        server_time: datetime,
    ) -> None:
        self._ensure_pending()
        self.status = True
        self.message = message
        self.latency_ms = latency_ms
        self.stratum = stratum
        self.server_time = server_time
        self.checked_at = datetime.now(timezone.utc)

    def mark_down(self, message: str) -> None:
        self._ensure_pending()
        self.status = False
        self.message = message
        self.checked_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        """JSON-friendly heartbeat representation."""
        return {
            "time": self.checked_at.isoformat() if self.checked_at else None,
            "status": "up" if self.status else "down",
            "message": self.message,
            "latency_ms": self.latency_ms,
            "stratum": self.stratum,
            "server_time": (
                format_server_time(self.server_time) if self.server_time else None
            ),
        }


# ---------------------------------------------------------------------------
# Packet codec
# ---------------------------------------------------------------------------


def build_request() -> bytes:
    """Return the 48-byte client request: 0x1B followed by 47 zero bytes."""
    packet = bytearray(NTP_PACKET_SIZE)
    packet[0] = NTP_CLIENT_REQUEST_FLAGS
    return bytes(packet)


def decode_response(data: bytes) -> tuple[int, int]:
    """
    Decode stratum and transmit-timestamp seconds from a server reply.

    Only the first 48 bytes are consulted.

    Raises:
        ParseError: The reply is shorter than an NTP header.
    """
    if len(data) < NTP_PACKET_SIZE:
        raise ParseError(
            f"Packet Parse Error: expected at least {NTP_PACKET_SIZE} bytes, "
            f"got {len(data)}"
        )
    (stratum,) = struct.unpack_from("!B", data, NTP_STRATUM_OFFSET)
    (seconds,) = struct.unpack_from("!I", data, NTP_TRANSMIT_SECONDS_OFFSET)
    return stratum, seconds


def ntp_to_unix_seconds(ntp_seconds: int) -> int:
    return ntp_seconds - NTP_TO_UNIX_EPOCH_OFFSET


def ntp_to_datetime(ntp_seconds: int) -> datetime:
    """Convert NTP-era seconds to an aware UTC datetime."""
    return _UNIX_EPOCH + timedelta(seconds=ntp_to_unix_seconds(ntp_seconds))


def format_server_time(value: datetime) -> str:
    """ISO-8601, whole seconds, UTC with a trailing Z."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------


class _NtpClientProtocol(asyncio.DatagramProtocol):
    """Resolves ``response`` with the first datagram or the first socket error."""

    def __init__(self, response: asyncio.Future) -> None:
        self._response = response

    def datagram_received(self, data: bytes, addr) -> None:
        if self._response.done():
            return
        received_at = asyncio.get_running_loop().time()
        self._response.set_result((received_at, data))

    def error_received(self, exc: Exception) -> None:
        if not self._response.done():
            self._response.set_exception(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None and not self._response.done():
            self._response.set_exception(exc)


class NtpProbe:
    """
    NTP health check.

    Holds no per-check state: one instance may serve any number of concurrent
    checks, each with its own socket and result.
    """

    name = "ntp"

    async def check(
        self, target: ProbeTarget, result: ProbeResult | None = None
    ) -> ProbeResult:
        """
        Run one request/response round trip against ``target``.

        Writes the outcome into ``result`` (a fresh ProbeResult if omitted)
        and returns it on success.

        Raises:
            ProbeError: One of SendError, ProbeTimeoutError, TransportError,
                ParseError or StratumMismatchError. ``result`` is already
                marked down and is attached as ``exc.result``.
        """
        if result is None:
            result = ProbeResult()
        try:
            rtt_ms, data = await self._round_trip(target)
            stratum, ntp_seconds = decode_response(data)
            if (
                target.expected_stratum is not None
                and stratum != target.expected_stratum
            ):
                raise StratumMismatchError(target.expected_stratum, stratum)
        except ProbeError as exc:
            exc.result = result
            result.mark_down(str(exc))
            logger.warning("NTP check failed for %s: %s", target.label, exc)
            raise

        server_time = ntp_to_datetime(ntp_seconds)
        result.mark_up(
            f"OK - Stratum: {stratum}, RTT: {round(rtt_ms)}ms, "
            f"ServerTime: {format_server_time(server_time)}",
            latency_ms=rtt_ms,
            stratum=stratum,
            server_time=server_time,
        )
        logger.debug("NTP check OK for %s: %s", target.label, result.message)
        return result

    async def _round_trip(self, target: ProbeTarget) -> tuple[float, bytes]:
        """Send one request and wait for the first reply. Returns (rtt_ms, data)."""
        loop = asyncio.get_running_loop()
        response: asyncio.Future = loop.create_future()
        # Name resolution happens while opening the endpoint and counts
        # against the same deadline as the reply.
        deadline = loop.time() + target.timeout

        try:
            transport, _ = await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    lambda: _NtpClientProtocol(response),
                    remote_addr=(target.hostname, target.port),
                    family=socket.AF_INET,
                ),
                target.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProbeTimeoutError(_TIMEOUT_MESSAGE) from exc
        except OSError as exc:
            raise SendError(f"Send Failed: {exc}") from exc

        try:
            sent_at = loop.time()
            try:
                transport.sendto(build_request())
                # sendto() reports immediate failures through error_received()
                if response.done():
                    response.result()
            except OSError as exc:
                raise SendError(f"Send Failed: {exc}") from exc

            remaining = max(0.0, deadline - loop.time())
            try:
                received_at, data = await asyncio.wait_for(response, remaining)
            except asyncio.TimeoutError as exc:
                raise ProbeTimeoutError(_TIMEOUT_MESSAGE) from exc
            except OSError as exc:
                raise TransportError(f"UDP Communication Error: {exc}") from exc
        finally:
            _close_quietly(transport, target)

        return (received_at - sent_at) * MS_PER_SECOND, data


def _close_quietly(transport: asyncio.BaseTransport, target: ProbeTarget) -> None:
    """Close the socket; a close failure must not replace the check outcome."""
    try:
        transport.close()
    except Exception as exc:
        logger.debug("Could not close UDP socket for %s: %s", target.label, exc)


async def check_targets(
    targets: list[ProbeTarget], probe: NtpProbe | None = None
) -> list[ProbeResult]:
    """
    Probe all targets concurrently, one socket each.

    Never raises for a failed check: every target gets a completed result,
    in the same order as ``targets``.
    """
    probe = probe or NtpProbe()
    results = [ProbeResult() for _ in targets]

    async def _one(target: ProbeTarget, result: ProbeResult) -> None:
        try:
            await probe.check(target, result)
        except ProbeError:
            pass  # already recorded in result

    outcomes = await asyncio.gather(
        *(_one(t, r) for t, r in zip(targets, results)),
        return_exceptions=True,
    )
    for target, result, outcome in zip(targets, results, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(
                "Unexpected error checking %s", target.label, exc_info=outcome
            )
            if not result.completed:
                result.mark_down(f"Check error: {outcome}")
    return results
