"""
Async weather client for the OpenWeatherMap current-weather API.

Issues ``GET {url}?lat=..&lon=..&appid=..&units=metric`` and parses the
response into a :class:`WeatherSample`. Every field of the sample must be
present in the payload; an incomplete payload is rejected as a whole.

Operations:
- fetch(): one request, bounded by ``timeout_s``; raises WeatherError.

The request is bounded twice: httpx phase timeouts (connect/read/write/pool)
and an overall ``asyncio.wait_for`` so a slowly trickling body cannot stall
the slow loop. The API key is sent as a query parameter and never logged.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

import httpx
from pydantic import BaseModel, Field, ValidationError

from collector.src.models import WeatherSample

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S: float = 10.0


class WeatherError(Exception):
    """The weather service could not deliver a complete observation."""


class WeatherRateLimitedError(WeatherError):
    """The weather service answered 429 Too Many Requests.

    Attributes:
        retry_after_s: Seconds from the ``Retry-After`` header, if numeric.
    """

    def __init__(self, message: str, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


# ---------------------------------------------------------------------------
# Provider payload schema
# ---------------------------------------------------------------------------


class _Condition(BaseModel):
    id: int


class _Main(BaseModel):
    temp: float
    pressure: float
    humidity: float


class _Wind(BaseModel):
    speed: float
    deg: float


class _Clouds(BaseModel):
    all: float


class _Payload(BaseModel):
    weather: list[_Condition] = Field(min_length=1)
    main: _Main
    visibility: float
    wind: _Wind
    clouds: _Clouds


class WeatherClient:
    """Fetches current weather for a fixed location.

    Args:
        url: Endpoint of the current-weather API.
        lat: Latitude of the site.
        lon: Longitude of the site.
        app_id: API key.
        timeout_s: Upper bound for one request, in seconds.
        transport: Optional httpx transport (used by tests).
        clock: Returns the ``fetched_at`` timestamp.

    Usage::

        client = WeatherClient(
            url="https://api.openweathermap.org/data/2.5/weather",
            lat=52.37,
            lon=4.89,
            app_id="...",
        )
        sample = await client.fetch()
    """

    def __init__(
        self,
        *,
        url: str,
        lat: float,
        lon: float,
        app_id: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._url = url
        self._params = {
            "lat": lat,
            "lon": lon,
            "appid": app_id,
            "units": "metric",
        }
        self._timeout_s = timeout_s
        self._transport = transport
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    async def fetch(self) -> WeatherSample:
        """Fetch and parse the current weather.

        Returns:
            A complete :class:`WeatherSample`.

        Raises:
            WeatherRateLimitedError: On HTTP 429.
            WeatherError: On network errors, timeouts, other non-200
                responses, or a malformed/incomplete payload.
        """
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_s),
                transport=self._transport,
            ) as client:
                response = await asyncio.wait_for(
                    client.get(self._url, params=self._params),
                    timeout=self._timeout_s,
                )
        except TimeoutError as exc:
            raise WeatherError(
                f"weather request exceeded {self._timeout_s:.1f}s"
            ) from exc
        except httpx.TimeoutException as exc:
            raise WeatherError(f"weather request timed out: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise WeatherError(f"weather service unreachable: {type(exc).__name__}") from exc
        except httpx.DecodingError as exc:
            raise WeatherError(
                f"malformed weather payload: {type(exc).__name__}"
            ) from exc
        except httpx.HTTPError as exc:
            raise WeatherError(f"weather request failed: {type(exc).__name__}") from exc

        if response.status_code == 429:
            raise WeatherRateLimitedError(
                "weather service rate limit reached (HTTP 429)",
                retry_after_s=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code != 200:
            raise WeatherError(f"weather service returned HTTP {response.status_code}")

        try:
            payload = _Payload.model_validate(response.json())
        except ValueError as exc:
            # ValidationError subclasses ValueError, as does JSONDecodeError.
            raise WeatherError(f"malformed weather payload: {_short_reason(exc)}") from exc

        sample = WeatherSample(
            temperature=payload.main.temp,
            humidity=payload.main.humidity,
            pressure=payload.main.pressure,
            visibility=payload.visibility,
            wind_speed=payload.wind.speed,
            wind_direction=payload.wind.deg,
            cloud_coverage=payload.clouds.all,
            condition_id=payload.weather[0].id,
            fetched_at=self._clock(),
        )
        logger.debug(
            "Weather fetched: %.2f C, %.0f%% humidity, %.0f hPa",
            sample.temperature,
            sample.humidity,
            sample.pressure,
        )
        return sample


def _parse_retry_after(value: str | None) -> float | None:
    """Return the Retry-After header as seconds, ignoring HTTP-date values."""
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _short_reason(exc: ValueError) -> str:
    """Summarise a parse failure without echoing the response body."""
    if isinstance(exc, ValidationError):
        missing = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        return f"invalid fields {missing}"
    return type(exc).__name__
