"""
Clients for the external collaborators the alert engine depends on.

- Roster provider: resolves a rule's applies_to / specific_players to players.
- Statistics provider: averages a player's metric over a time range.

Both are plain HTTP services; how "starters" or "bench" are defined is up to
the roster service. The engine only needs objects with the same async
methods, so tests and other deployments can substitute their own.
"""

import logging
import os
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_URL = "http://localhost:8001"


def _get_timeout() -> float:
    """Read the provider request timeout (seconds) from the environment."""
    return float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))


class RosterProvider(Protocol):
    async def get_players(self, applies_to: str, specific_players: List[str]) -> List[Dict]:
        """Return players as dicts with at least "id" (and usually "name")."""
        ...


class StatsProvider(Protocol):
    async def get_metric_value(
        self, player_id: str, metric_name: str, start: datetime, end: datetime
    ) -> Optional[float]:
        """Return the metric aggregated over [start, end], or None when there is no data."""
        ...


class HttpRosterProvider:
    """Roster service client: GET {base_url}/players."""

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or os.getenv("ROSTER_API_URL", DEFAULT_PROVIDER_URL)).rstrip("/")
        self._transport = transport

    async def get_players(self, applies_to: str, specific_players: List[str]) -> List[Dict]:
        """
        Resolve a roster segment to players.

        Args:
            applies_to: RuleAppliesTo value ("all", "starters", "bench", "specific")
            specific_players: Player ids, sent only for "specific"

        Returns:
            List of player dicts with "id" and "name"

        Raises:
            httpx.HTTPError: If the roster service is unreachable or errors
        """
        params = {"applies_to": applies_to}
        if specific_players:
            params["player_ids"] = ",".join(str(pid) for pid in specific_players)

        async with httpx.AsyncClient(timeout=_get_timeout(), transport=self._transport) as client:
            resp = await client.get(f"{self.base_url}/players", params=params)
            resp.raise_for_status()
            data = resp.json()

        players = data.get("players", []) if isinstance(data, dict) else data
        return [
            {"id": str(player["id"]), "name": player.get("name") or str(player["id"])}
            for player in players
            if player.get("id") is not None
        ]


class HttpStatsProvider:
    """Statistics service client: GET {base_url}/players/{id}/metrics/{metric}."""

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (base_url or os.getenv("STATS_API_URL", DEFAULT_PROVIDER_URL)).rstrip("/")
        self._transport = transport

    async def get_metric_value(
        self, player_id: str, metric_name: str, start: datetime, end: datetime
    ) -> Optional[float]:
        """
        Fetch a player's metric aggregated over a time range.

        Returns:
            The metric value, or None if the service has no data (404 or null value)

        Raises:
            httpx.HTTPError: For transport failures and non-404 error responses
        """
        async with httpx.AsyncClient(timeout=_get_timeout(), transport=self._transport) as client:
            resp = await client.get(
                f"{self.base_url}/players/{player_id}/metrics/{metric_name}",
                params={"start": start.isoformat(), "end": end.isoformat()},
            )
            if resp.status_code == 404:
                logger.info(f"No {metric_name} data for player {player_id}")
                return None
            resp.raise_for_status()
            data = resp.json()

        value = data.get("value")
        if value is None:
            return None
        return float(value)
