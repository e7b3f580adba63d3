"""
Unit tests for the FRITZ!DECT plug reader.

Tests verify:
- read() logs in with the MD5 challenge response and reads power, energy
  and temperature (tenths of a degree) into a PlugSample.
- Commands are sent with switchcmd, ain and the session id.
- Non-200 responses, a rejected login (all-zero SID), malformed SessionInfo
  and "inval" command bodies raise SensorError.
- Network errors and hung requests raise SensorError within timeout_s.
- The password never appears in requests or error messages.
- probe() performs the login only.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import UTC, datetime

import httpx
import pytest
from collector.src.config import PlugConfig
from collector.src.fritz import FritzPlugReader, challenge_response
from collector.src.power import SensorError

_TS = datetime(2026, 10, 17, 12, 0, 0, tzinfo=UTC)
_SID = "9f2c1a3b4d5e6f70"
_CHALLENGE = "1234abcd"

_PLUG = PlugConfig(
    label="heater",
    url="https://fritz.box",
    user="collector",
    password="fritz-secret",
    ain="11630 0123456",
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_info(sid: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="utf-8"?><SessionInfo>'
        f"<SID>{sid}</SID><Challenge>{_CHALLENGE}</Challenge>"
        "<BlockTime>0</BlockTime></SessionInfo>"
    ).encode()


def _fritz_box(
    *,
    challenge_status: int = 200,
    login_status: int = 200,
    sid: str = _SID,
    values: dict[str, str] | None = None,
    command_status: int = 200,
):  # noqa: ANN202
    """Return a MockTransport handler emulating the FRITZ!Box AHA interface."""
    bodies = values or {
        "getswitchpower": "10000",
        "getswitchenergy": "1200",
        "gettemperature": "100",
    }
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/login_sid.lua":
            if "response" not in request.url.params:
                return httpx.Response(
                    challenge_status, content=_session_info("0000000000000000")
                )
            return httpx.Response(login_status, content=_session_info(sid))
        if request.url.path == "/webservices/homeautoswitch.lua":
            command = request.url.params["switchcmd"]
            return httpx.Response(command_status, text=bodies[command] + "\n")
        return httpx.Response(404)

    handler.requests = requests  # type: ignore[attr-defined]
    return handler


def _reader(handler, *, timeout_s: float = 2.0) -> FritzPlugReader:  # noqa: ANN001
    return FritzPlugReader(
        _PLUG,
        timeout_s=timeout_s,
        transport=httpx.MockTransport(handler),
        clock=lambda: _TS,
    )


# ---------------------------------------------------------------------------
# Challenge response
# ---------------------------------------------------------------------------


class TestChallengeResponse:
    """The login response is <challenge>-md5(utf-16le(challenge-password))."""

    def test_known_vector(self) -> None:
        assert (
            challenge_response("1234567z", "äbc")
            == "1234567z-9e224a41eeefa284df7bb0f26c2913e2"
        )

    def test_matches_utf16le_md5(self) -> None:
        expected = hashlib.md5(
            f"{_CHALLENGE}-fritz-secret".encode("utf-16-le")
        ).hexdigest()

        assert challenge_response(_CHALLENGE, "fritz-secret") == f"{_CHALLENGE}-{expected}"


# ---------------------------------------------------------------------------
# Successful read
# ---------------------------------------------------------------------------


class TestReadSuccess:
    """A successful login and three commands yield a PlugSample."""

    @pytest.mark.asyncio
    async def test_reads_all_values(self) -> None:
        sample = await _reader(_fritz_box()).read()

        assert sample.plug_id == "heater"
        assert sample.power == 10000.0
        assert sample.energy == 1200.0
        assert sample.temperature == 10.0
        assert sample.sampled_at == _TS

    @pytest.mark.asyncio
    async def test_login_sends_user_and_challenge_response(self) -> None:
        handler = _fritz_box()
        await _reader(handler).read()

        challenge_req, login_req = handler.requests[:2]
        assert challenge_req.url.path == "/login_sid.lua"
        assert "response" not in challenge_req.url.params
        assert login_req.url.params["username"] == "collector"
        assert login_req.url.params["response"] == challenge_response(
            _CHALLENGE, "fritz-secret"
        )

    @pytest.mark.asyncio
    async def test_commands_carry_ain_and_sid(self) -> None:
        handler = _fritz_box()
        await _reader(handler).read()

        commands = handler.requests[2:]
        assert [r.url.params["switchcmd"] for r in commands] == [
            "getswitchpower",
            "getswitchenergy",
            "gettemperature",
        ]
        for request in commands:
            assert request.url.params["ain"] == "11630 0123456"
            assert request.url.params["sid"] == _SID

    @pytest.mark.asyncio
    async def test_password_never_sent_in_clear(self) -> None:
        handler = _fritz_box()
        await _reader(handler).read()

        assert all("fritz-secret" not in str(r.url) for r in handler.requests)


# ---------------------------------------------------------------------------
# FRITZ!Box failures
# ---------------------------------------------------------------------------


class TestReadFailures:
    """Every failure mode surfaces as SensorError for the plug."""

    @pytest.mark.asyncio
    async def test_challenge_non_200(self) -> None:
        with pytest.raises(SensorError, match="plug 'heater': challenge request"):
            await _reader(_fritz_box(challenge_status=406)).read()

    @pytest.mark.asyncio
    async def test_login_non_200(self) -> None:
        with pytest.raises(SensorError, match="login returned HTTP 406"):
            await _reader(_fritz_box(login_status=406)).read()

    @pytest.mark.asyncio
    async def test_zero_sid_is_rejected_login(self) -> None:
        handler = _fritz_box(sid="0000000000000000")

        with pytest.raises(SensorError, match="login rejected") as exc_info:
            await _reader(handler).read()

        assert exc_info.value.rail_id == "heater"
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_command_non_200(self) -> None:
        with pytest.raises(SensorError, match="getswitchpower returned HTTP 406"):
            await _reader(_fritz_box(command_status=406)).read()

    @pytest.mark.asyncio
    async def test_inval_body(self) -> None:
        values = {
            "getswitchpower": "inval",
            "getswitchenergy": "1200",
            "gettemperature": "100",
        }

        with pytest.raises(SensorError, match="'inval'"):
            await _reader(_fritz_box(values=values)).read()

    @pytest.mark.asyncio
    async def test_malformed_session_info(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>not a session</html")

        with pytest.raises(SensorError, match="malformed SessionInfo"):
            await _reader(handler).read()

    @pytest.mark.asyncio
    async def test_session_info_without_challenge(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<SessionInfo><SID>0</SID></SessionInfo>")

        with pytest.raises(SensorError, match="lacks SID or Challenge"):
            await _reader(handler).read()


class TestNetworkErrors:
    """Transport failures and timeouts raise SensorError."""

    @pytest.mark.asyncio
    async def test_connect_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SensorError, match="unreachable: ConnectError"):
            await _reader(handler).read()

    @pytest.mark.asyncio
    async def test_hung_request_is_bounded(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(10)
            return httpx.Response(200)

        with pytest.raises(SensorError, match="exceeded"):
            await asyncio.wait_for(_reader(handler, timeout_s=0.05).read(), timeout=5)

    @pytest.mark.asyncio
    async def test_password_not_in_error_message(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError(f"failed for {request.url}", request=request)

        with pytest.raises(SensorError) as exc_info:
            await _reader(handler).read()

        assert "fritz-secret" not in str(exc_info.value)


# ---------------------------------------------------------------------------
# Startup probe
# ---------------------------------------------------------------------------


class TestProbe:
    """probe() logs in without reading any values."""

    @pytest.mark.asyncio
    async def test_probe_logs_in_only(self) -> None:
        handler = _fritz_box()

        await _reader(handler).probe()

        assert [r.url.path for r in handler.requests] == ["/login_sid.lua"] * 2

    @pytest.mark.asyncio
    async def test_probe_rejected_login(self) -> None:
        with pytest.raises(SensorError, match="login rejected"):
            await _reader(_fritz_box(sid="0000000000000000")).probe()
