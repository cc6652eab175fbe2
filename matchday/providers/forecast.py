"""
Forecast generator backed by an OpenAI-compatible chat-completions endpoint.

Each predictor is one model id on the same endpoint. The model is asked for a
JSON object {"home_score": int, "away_score": int}; a bare "2-1" reply is
accepted as a fallback parse.
"""

import json
import logging
import re
import time
from typing import Optional

import httpx

from matchday.errors import ForecastError, ForecastUnavailableError
from matchday.providers.base import FixtureContext, ForecastGenerator, PredictorConfig
from matchday.telemetry.metrics import record_provider_request
from matchday.utils.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

MAX_PLAUSIBLE_GOALS = 15
_SCORE_PAIR_RE = re.compile(r"\b(\d{1,2})\s*[-:]\s*(\d{1,2})\b")

# Statuses that mean the endpoint itself is failing, whatever model was asked
PROVIDER_WIDE_STATUSES = (401, 403, 429)

PROMPT_TEMPLATE = (
    "Predict the final score of this football match.\n"
    "Competition id: {competition_id}\n"
    "Home: {home_team}\n"
    "Away: {away_team}\n"
    "Kickoff (UTC): {kickoff}\n\n"
    'Reply with JSON only: {{"home_score": <int>, "away_score": <int>}}'
)


def parse_score(text: str) -> tuple[int, int]:
    """Extract (home, away) from a model reply. Raises ForecastError."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        cleaned = cleaned[cleaned.find("{"):] if "{" in cleaned else cleaned

    home = away = None
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            data = json.loads(cleaned[start:end + 1])
            home, away = int(data["home_score"]), int(data["away_score"])
        except (ValueError, KeyError, TypeError):
            home = away = None

    if home is None:
        match = _SCORE_PAIR_RE.search(cleaned)
        if not match:
            raise ForecastError(f"Unparseable forecast: {text[:200]!r}")
        home, away = int(match.group(1)), int(match.group(2))

    if not (0 <= home <= MAX_PLAUSIBLE_GOALS and 0 <= away <= MAX_PLAUSIBLE_GOALS):
        raise ForecastError(f"Implausible forecast {home}-{away}")
    return home, away


class ChatForecastGenerator(ForecastGenerator):
    """Async client for a chat-completions forecast endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = 60.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("forecast", failure_threshold=5, reset_timeout=60.0)
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def generate_forecast(
        self, predictor: PredictorConfig, context: FixtureContext
    ) -> tuple[int, int]:
        if not self.api_key:
            raise ForecastUnavailableError("FORECAST_API_KEY not configured")
        if not self.breaker.allow_request():
            raise ForecastUnavailableError(
                f"Forecast circuit open ({self.breaker.consecutive_failures} consecutive failures)"
            )

        client = await self._get_client()
        prompt = PROMPT_TEMPLATE.format(
            competition_id=context.competition_id,
            home_team=context.home_team,
            away_team=context.away_team,
            kickoff=context.kickoff_at.isoformat(),
        )
        payload = {
            "model": predictor.provider_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0.7,
            "max_tokens": 100,
        }

        start_time = time.time()
        try:
            response = await client.post(self.api_url, json=payload)
        except httpx.HTTPError as e:
            record_provider_request("forecast", "chat", 0, (time.time() - start_time) * 1000)
            self.breaker.record_failure()
            raise ForecastError(f"{predictor.name}: request failed: {e}") from e

        record_provider_request("forecast", "chat", response.status_code, (time.time() - start_time) * 1000)
        if response.status_code in PROVIDER_WIDE_STATUSES or response.status_code >= 500:
            self.breaker.record_failure()
        else:
            # Endpoint reachable; a 400/404 here is about this predictor's model id
            self.breaker.record_success()

        if response.status_code != 200:
            raise ForecastError(f"{predictor.name}: HTTP {response.status_code}: {response.text[:200]}")

        try:
            text = response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ForecastError(f"{predictor.name}: malformed response: {e}") from e

        return parse_score(text)
