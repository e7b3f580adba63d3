"""
Async reader for FRITZ!DECT smart plugs behind a FRITZ!Box.

Every read logs in again and then queries the plug through the AHA HTTP
interface:

1. ``GET /login_sid.lua`` returns a SessionInfo document with a challenge.
2. ``GET /login_sid.lua?username=..&response=<challenge>-<md5>`` exchanges
   the challenge response for a session id (SID). The MD5 is taken over the
   UTF-16LE encoding of ``<challenge>-<password>``.
3. ``GET /webservices/homeautoswitch.lua?switchcmd=..&ain=..&sid=..`` once
   per value: ``getswitchpower`` (mW), ``getswitchenergy`` (Wh) and
   ``gettemperature`` (tenths of a degree Celsius).

An all-zero SID means the FRITZ!Box rejected the credentials. A command
answering ``inval`` means the plug is unknown or not reachable over DECT.

Operations:
- read(): one login plus three commands, bounded by ``timeout_s``;
  raises SensorError.
- probe(): login only, used at startup to fail fast on bad credentials.

The password is only ever sent as part of the hashed challenge response
and is never logged or included in error messages.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import xml.etree.ElementTree as ElementTree
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import httpx

from collector.src.models import PlugSample
from collector.src.power import SensorError

if TYPE_CHECKING:
    from collector.src.config import PlugConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S: float = 3.0

LOGIN_PATH = "/login_sid.lua"
SWITCH_PATH = "/webservices/homeautoswitch.lua"

COMMANDS: tuple[tuple[str, str], ...] = (
    ("power", "getswitchpower"),
    ("energy", "getswitchenergy"),
    ("temperature", "gettemperature"),
)
"""PlugSample field and the switch command that reads it, in column order."""


def challenge_response(challenge: str, password: str) -> str:
    """Return the ``response`` login parameter for *challenge*."""
    digest = hashlib.md5(
        f"{challenge}-{password}".encode("utf-16-le"), usedforsecurity=False
    ).hexdigest()
    return f"{challenge}-{digest}"


def _parse_session_info(label: str, body: bytes) -> tuple[str, str]:
    """Return ``(sid, challenge)`` from a SessionInfo document."""
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as exc:
        raise SensorError(label, f"malformed SessionInfo: {exc}", kind="plug") from exc
    sid = root.findtext("SID")
    challenge = root.findtext("Challenge")
    if sid is None or challenge is None:
        raise SensorError(label, "SessionInfo lacks SID or Challenge", kind="plug")
    return sid.strip(), challenge.strip()


class FritzPlugReader:
    """Reads power, energy and temperature from one FRITZ!DECT plug.

    Args:
        plug: Plug configuration (FRITZ!Box URL, credentials, AIN).
        timeout_s: Upper bound for one complete read, login included.
        transport: Optional httpx transport (used by tests).
        clock: Returns the ``sampled_at`` timestamp.

    Usage::

        reader = FritzPlugReader(settings.plugs[0], timeout_s=3.0)
        await reader.probe()
        sample = await reader.read()
    """

    def __init__(
        self,
        plug: PlugConfig,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._plug = plug
        self._timeout_s = timeout_s
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    @property
    def label(self) -> str:
        return self._plug.label

    async def read(self) -> PlugSample:
        """Log in and read all plug values.

        Raises:
            SensorError: On network errors, timeouts, non-200 responses,
                rejected credentials, or an unparseable value.
        """
        values = await self._bounded(self._read_values)
        sample = PlugSample(
            plug_id=self._plug.label,
            power=values["power"],
            energy=values["energy"],
            temperature=values["temperature"] / 10.0,
            sampled_at=self._clock(),
        )
        logger.debug(
            "Plug %s: %.0f mW, %.0f Wh, %.1f C",
            self._plug.label,
            sample.power,
            sample.energy,
            sample.temperature,
        )
        return sample

    async def probe(self) -> None:
        """Log in once to verify the FRITZ!Box is reachable and accepts us."""
        await self._bounded(self._login_only)
        logger.info("Plug %s: FRITZ!Box login ok", self._plug.label)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _bounded(
        self, action: Callable[[httpx.AsyncClient], Awaitable[dict[str, float]]]
    ) -> dict[str, float]:
        label = self._plug.label
        try:
            async with httpx.AsyncClient(
                base_url=self._plug.url,
                timeout=httpx.Timeout(self._timeout_s),
                verify=self._plug.verify_tls,
                transport=self._transport,
            ) as client:
                return await asyncio.wait_for(action(client), timeout=self._timeout_s)
        except TimeoutError as exc:
            raise SensorError(
                label, f"read exceeded {self._timeout_s:.1f}s", kind="plug"
            ) from exc
        except httpx.HTTPError as exc:
            raise SensorError(
                label, f"FRITZ!Box unreachable: {type(exc).__name__}", kind="plug"
            ) from exc

    async def _login_only(self, client: httpx.AsyncClient) -> dict[str, float]:
        await self._login(client)
        return {}

    async def _read_values(self, client: httpx.AsyncClient) -> dict[str, float]:
        sid = await self._login(client)
        values: dict[str, float] = {}
        for name, command in COMMANDS:
            values[name] = await self._command(client, command, sid)
        return values

    async def _login(self, client: httpx.AsyncClient) -> str:
        label = self._plug.label
        response = await client.get(LOGIN_PATH)
        if response.status_code != 200:
            raise SensorError(
                label,
                f"challenge request returned HTTP {response.status_code}",
                kind="plug",
            )
        _, challenge = _parse_session_info(label, response.content)

        response = await client.get(
            LOGIN_PATH,
            params={
                "username": self._plug.user,
                "response": challenge_response(challenge, self._plug.password),
            },
        )
        if response.status_code != 200:
            raise SensorError(
                label, f"login returned HTTP {response.status_code}", kind="plug"
            )
        sid, _ = _parse_session_info(label, response.content)
        if not sid.strip("0"):
            raise SensorError(label, "login rejected by FRITZ!Box", kind="plug")
        return sid

    async def _command(self, client: httpx.AsyncClient, command: str, sid: str) -> float:
        label = self._plug.label
        response = await client.get(
            SWITCH_PATH,
            params={"switchcmd": command, "ain": self._plug.ain, "sid": sid},
        )
        if response.status_code != 200:
            raise SensorError(
                label, f"{command} returned HTTP {response.status_code}", kind="plug"
            )
        body = response.text.strip()
        try:
            return float(body)
        except ValueError:
            # "inval" when the AIN is unknown or the plug is out of DECT range
            raise SensorError(
                label, f"{command} returned {body[:20]!r}", kind="plug"
            ) from None
