"""Settlement executor: the collaborator that resolves markets for an event.

The worker never pays out itself. It asks the internal API to settle an
event and sends an ``Idempotency-Key`` built from the event identity, so
a retry after a crash (executor succeeded, status write lost) cannot
settle twice.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from ..config import settings
from ..logging import logger

SETTLE_PATH = "/api/internal/settlements"


def _auth_headers() -> dict[str, str]:
    if not settings.api_key:
        return {}
    return {"X-API-Key": settings.api_key}


@dataclass(frozen=True)
class SettlementRequest:
    item_id: int
    event_id: int
    league: str
    provider: str
    external_id: str
    outcome: str | None
    home_score: int | None = None
    away_score: int | None = None

    @property
    def idempotency_key(self) -> str:
        return f"settle:{self.provider}:{self.external_id}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "queue_item_id": self.item_id,
            "event_id": self.event_id,
            "league": self.league,
            "provider": self.provider,
            "external_id": self.external_id,
            "outcome": self.outcome,
            "home_score": self.home_score,
            "away_score": self.away_score,
        }


@dataclass(frozen=True)
class SettlementOutcome:
    success: bool
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class SettlementExecutor(Protocol):
    def settle(self, request: SettlementRequest) -> SettlementOutcome:
        ...


class HttpSettlementExecutor:
    """Settle events through the internal API."""

    def __init__(self, base_url: str | None = None, client: httpx.Client | None = None) -> None:
        self.base_url = (base_url or settings.api_internal_url).rstrip("/")
        self.client = client or httpx.Client(timeout=30.0, headers=_auth_headers())

    def close(self) -> None:
        self.client.close()

    def settle(self, request: SettlementRequest) -> SettlementOutcome:
        url = f"{self.base_url}{SETTLE_PATH}"
        try:
            response = self.client.post(
                url,
                json=request.to_payload(),
                headers={"Idempotency-Key": request.idempotency_key},
            )
        except httpx.HTTPError as exc:
            logger.warning("settlement_executor_unreachable", item_id=request.item_id, error=str(exc))
            return SettlementOutcome(success=False, error=f"request failed: {exc}")

        # 409: already settled under this idempotency key
        if response.status_code == 409:
            logger.info("settlement_executor_already_settled", item_id=request.item_id)
            return SettlementOutcome(success=True, details={"already_settled": True})

        if response.status_code >= 400:
            return SettlementOutcome(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:300]}",
            )

        try:
            details = response.json() if response.content else {}
        except ValueError:
            details = {"raw": response.text[:300]}
        if not isinstance(details, dict):
            details = {"result": details}
        return SettlementOutcome(success=True, details=details)
