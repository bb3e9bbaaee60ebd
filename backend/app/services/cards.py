"""Card search client used to attach card details to conversation messages."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class CardLookupError(RuntimeError):
    """Raised when the card search API fails for a reason other than "no match"."""


class CardSummary(BaseModel):
    """Subset of a card search result shown inside a message."""

    name: str
    mana_cost: str | None = None
    type_line: str | None = None
    oracle_text: str | None = None
    image_url: str | None = None
    card_url: str | None = None
    set_name: str | None = None
    rarity: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "CardSummary":
        images = payload.get("image_uris") or {}
        return cls(
            name=payload["name"],
            mana_cost=payload.get("mana_cost"),
            type_line=payload.get("type_line"),
            oracle_text=payload.get("oracle_text"),
            image_url=images.get("normal") or images.get("large"),
            card_url=payload.get("scryfall_uri"),
            set_name=payload.get("set_name"),
            rarity=payload.get("rarity"),
        )

    def to_metadata(self) -> dict[str, Any]:
        """Message attachment stored under ``metadata["card"]``."""

        return {
            "card": {
                "name": self.name,
                "image_url": self.image_url,
                "scryfall_url": self.card_url,
                "mana_cost": self.mana_cost,
                "type_line": self.type_line,
                "oracle_text": self.oracle_text,
            }
        }


class CardLookupService:
    """Searches cards by free-text query."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.base_url = str(settings.card_search_url).rstrip("/")
        self.limit = settings.card_search_limit
        self.timeout = settings.card_search_timeout_seconds
        self._transport = transport

    async def search(self, query: str) -> list[CardSummary]:
        """
        Search cards matching ``query``, ordered by name.

        Args:
            query: Free-text search expression.

        Returns:
            At most ``card_search_limit`` summaries; an empty list when nothing matches.

        Raises:
            CardLookupError: If the request fails or the response cannot be read.
        """
        query = query.strip()
        if not query:
            return []
        params = {"q": query, "order": "name", "unique": "cards"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/cards/search", params=params)
                if response.status_code == 404:
                    return []
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Card search failed", extra={"query": query}, exc_info=True)
            raise CardLookupError(f"Card search failed for '{query}'") from exc

        cards: list[CardSummary] = []
        for item in (payload.get("data") or [])[: self.limit]:
            try:
                cards.append(CardSummary.from_api(item))
            except (KeyError, TypeError, ValidationError):
                logger.warning("Skipped malformed card search result", extra={"query": query})
        return cards

    async def first(self, query: str) -> CardSummary | None:
        cards = await self.search(query)
        return cards[0] if cards else None
