"""Network difficulty lookup over HTTP."""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
import structlog

from reconciler.core.config import get_settings
from reconciler.core.exceptions import ExternalLookupError

logger = structlog.get_logger()


class DifficultyClient:
    """Client for the blockchain.info difficulty chart API.

    The chart endpoint returns ``{"values": [{"x": <unix ts>, "y": <difficulty>}]}``.
    The most recent point at or before the requested day is used.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = base_url or settings.DIFFICULTY_API_URL
        self.timeout = timeout if timeout is not None else settings.DIFFICULTY_API_TIMEOUT
        self.transport = transport

    async def lookup_difficulty(self, day: date) -> Decimal:
        """Fetch the network difficulty in effect on ``day``.

        Raises:
            ExternalLookupError: on transport errors, non-200 responses or
                payloads without a usable value.
        """
        params = {
            "start": day.isoformat(),
            "timespan": "14days",
            "format": "json",
            "sampled": "false",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(self.base_url, params=params)
        except httpx.HTTPError as e:
            raise ExternalLookupError(f"Difficulty request for {day} failed: {e}") from e

        if response.status_code != 200:
            raise ExternalLookupError(
                f"Difficulty API error for {day}: {response.status_code} - {response.text[:200]}"
            )

        try:
            values = response.json().get("values") or []
        except ValueError as e:
            raise ExternalLookupError(f"Difficulty API returned invalid JSON for {day}") from e

        difficulty = self._select_value(values, day)
        if difficulty is None:
            raise ExternalLookupError(f"No difficulty available for {day}")

        logger.debug("Fetched difficulty", date=day.isoformat(), difficulty=str(difficulty))
        return difficulty

    @staticmethod
    def _select_value(values: list, day: date) -> Optional[Decimal]:
        end_of_day = datetime(day.year, day.month, day.day, 23, 59, 59, tzinfo=timezone.utc).timestamp()
        best = None
        for point in values:
            try:
                ts = float(point["x"])
                value = Decimal(str(point["y"]))
            except (KeyError, TypeError, ValueError, InvalidOperation):
                continue
            if ts > end_of_day or value <= 0:
                continue
            if best is None or ts > best[0]:
                best = (ts, value)
        return best[1] if best else None
