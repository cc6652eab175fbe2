"""API-Football live/fixture data source (httpx)."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional

import httpx

from matchday.errors import ProviderError
from matchday.models import FixtureStatus
from matchday.providers.base import FixtureSnapshot, LiveDataSource
from matchday.telemetry.metrics import record_provider_request
from matchday.utils.circuit_breaker import CircuitBreaker
from matchday.utils.time import to_naive_utc

logger = logging.getLogger(__name__)

PROVIDER = "api_football"


def _record(endpoint: str, status_code: int, start_time: float) -> None:
    record_provider_request(PROVIDER, endpoint, status_code, (time.time() - start_time) * 1000)


# Provider short status -> FixtureStatus
STATUS_MAP = {
    "TBD": FixtureStatus.SCHEDULED,
    "NS": FixtureStatus.SCHEDULED,
    "PST": FixtureStatus.SCHEDULED,  # postponed: new kickoff arrives via data refresh
    "1H": FixtureStatus.LIVE,
    "HT": FixtureStatus.LIVE,
    "2H": FixtureStatus.LIVE,
    "ET": FixtureStatus.LIVE,
    "BT": FixtureStatus.LIVE,
    "P": FixtureStatus.LIVE,
    "LIVE": FixtureStatus.LIVE,
    "SUSP": FixtureStatus.LIVE,
    "INT": FixtureStatus.LIVE,
    "FT": FixtureStatus.FINISHED,
    "AET": FixtureStatus.FINISHED,
    "PEN": FixtureStatus.FINISHED,
    "AWD": FixtureStatus.FINISHED,
    "WO": FixtureStatus.FINISHED,
    "CANC": FixtureStatus.VOIDED,
    "ABD": FixtureStatus.VOIDED,
}


def map_status(status_code: Optional[str]) -> str:
    if not status_code:
        return FixtureStatus.SCHEDULED
    mapped = STATUS_MAP.get(status_code)
    if mapped is None:
        logger.warning(f"Unknown API-Football status code {status_code!r}, treating as scheduled")
        return FixtureStatus.SCHEDULED
    return mapped


def format_clock(status_code: Optional[str], elapsed: Optional[int], extra: Optional[int] = None) -> Optional[str]:
    """Display clock for a fixture: 67', 45'+2, HT, 90'+4, ET 105'."""
    if status_code in (None, "NS", "TBD", "PST", "CANC", "ABD"):
        return None
    if status_code in ("HT", "FT", "AET", "PEN"):
        return status_code
    if status_code == "BT":
        return "Break"
    if status_code == "P":
        return "PEN"
    if status_code == "ET":
        return f"ET {elapsed}'" if elapsed else "ET"
    if not elapsed:
        return "LIVE"
    if status_code == "1H" and (extra or elapsed > 45):
        return f"45'+{extra or elapsed - 45}"
    if status_code == "2H" and (extra or elapsed > 90):
        return f"90'+{extra or elapsed - 90}"
    return f"{elapsed}'"


def parse_fixture(raw: dict) -> FixtureSnapshot:
    """Parse one API-Football fixture payload."""
    fixture = raw.get("fixture", {})
    status = fixture.get("status", {})
    goals = raw.get("goals", {})
    teams = raw.get("teams", {})
    code = status.get("short")

    kickoff = None
    if fixture.get("date"):
        kickoff = to_naive_utc(datetime.fromisoformat(fixture["date"].replace("Z", "+00:00")))

    return FixtureSnapshot(
        external_id=int(fixture["id"]),
        competition_id=raw.get("league", {}).get("id"),
        status_code=code or "NS",
        status=map_status(code),
        clock=format_clock(code, status.get("elapsed"), status.get("extra")),
        home_score=goals.get("home"),
        away_score=goals.get("away"),
        kickoff_at=kickoff,
        home_team=teams.get("home", {}).get("name"),
        away_team=teams.get("away", {}).get("name"),
    )


class ApiFootballSource(LiveDataSource):
    """API-Football client with retry/backoff on 429, 5xx and timeouts."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://v3.football.api-sports.io",
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.breaker = breaker or CircuitBreaker(PROVIDER, failure_threshold=5, reset_timeout=30.0)
        self.client = client or httpx.AsyncClient(
            headers={"x-apisports-key": api_key},
            timeout=timeout,
        )

    async def _request(self, endpoint: str, params: dict, metric_endpoint: str) -> list[dict]:
        if not self.breaker.allow_request():
            logger.warning(f"[API_FOOTBALL] Circuit breaker OPEN, skipping {metric_endpoint}")
            raise ProviderError(f"API-Football circuit open ({self.breaker.consecutive_failures} consecutive failures)")
        try:
            payload = await self._request_with_retries(endpoint, params, metric_endpoint)
        except Exception:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()
        return payload

    async def _request_with_retries(self, endpoint: str, params: dict, metric_endpoint: str) -> list[dict]:
        url = f"{self.base_url}/{endpoint}"
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            start_time = time.time()
            try:
                response = await self.client.get(url, params=params)
            except httpx.TimeoutException as e:
                _record(metric_endpoint, 0, start_time)
                last_error = e
                logger.warning(f"[API_FOOTBALL] Timeout on {endpoint} (attempt {attempt + 1}/{self.max_retries})")
            except httpx.RequestError as e:
                _record(metric_endpoint, 0, start_time)
                last_error = e
                logger.warning(f"[API_FOOTBALL] Request error on {endpoint}: {e}")
            else:
                _record(metric_endpoint, response.status_code, start_time)
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = ProviderError(
                        f"API-Football {endpoint} returned {response.status_code}",
                        status_code=response.status_code,
                    )
                    logger.warning(f"[API_FOOTBALL] {response.status_code} on {endpoint}, backing off")
                elif response.status_code >= 400:
                    raise ProviderError(
                        f"API-Football {endpoint} returned {response.status_code}",
                        status_code=response.status_code,
                    )
                else:
                    data = response.json()
                    if data.get("errors"):
                        # API-Football reports quota/auth problems in the body with HTTP 200
                        raise ProviderError(f"API-Football error response: {data['errors']}")
                    return data.get("response", [])

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        raise ProviderError(f"API-Football {endpoint} failed after {self.max_retries} attempts: {last_error}")

    def _parse_all(self, payload: list[dict]) -> list[FixtureSnapshot]:
        snapshots = []
        for raw in payload:
            try:
                snapshots.append(parse_fixture(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"[API_FOOTBALL] Error parsing fixture: {e}")
        return snapshots

    async def get_live_fixtures(self) -> list[FixtureSnapshot]:
        payload = await self._request("fixtures", {"live": "all"}, "fixtures_live")
        return self._parse_all(payload)

    async def get_fixtures_by_external_ids(self, external_ids: list[int]) -> list[FixtureSnapshot]:
        snapshots: list[FixtureSnapshot] = []
        for i in range(0, len(external_ids), self.max_ids_per_request):
            chunk = external_ids[i:i + self.max_ids_per_request]
            ids_param = "-".join(str(fid) for fid in chunk)
            payload = await self._request("fixtures", {"ids": ids_param}, "fixtures_ids")
            snapshots.extend(self._parse_all(payload))
        return snapshots

    async def close(self) -> None:
        await self.client.aclose()

