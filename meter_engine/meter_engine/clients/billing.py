"""Billing collaborator: metered usage reporting to Stripe."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SubscriptionItem(BaseModel):
    """A billable line of a customer's subscription.

    ``lookup_keys`` is the price lookup key split on the configured
    separator, so one price can cover several resource identifiers.
    """

    id: str
    lookup_keys: list[str] = Field(default_factory=list)

    def covers(self, model: str) -> bool:
        return model in self.lookup_keys


class BillingClient(Protocol):
    """Protocol for the external billing provider."""

    async def list_subscription_items(self, billing_id: str) -> list[SubscriptionItem]: ...

    async def report_usage(self, item_id: str, quantity: int) -> None: ...


class StripeBillingClient:
    """Reports metered usage through the Stripe API.

    The Stripe SDK is imported lazily so that the engine can run without
    billing configured.

    Parameters
    ----------
    secret_key:
        Stripe secret API key.
    lookup_key_separator:
        Separator between resource identifiers inside a price lookup key.
    """

    def __init__(self, secret_key: str, lookup_key_separator: str = ",") -> None:
        self._secret_key = secret_key
        self._separator = lookup_key_separator

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._secret_key
        return stripe

    async def list_subscription_items(self, billing_id: str) -> list[SubscriptionItem]:
        """Return the items of every subscription held by *billing_id*."""
        stripe = self._get_stripe()
        subscriptions = await asyncio.to_thread(stripe.Subscription.list, customer=billing_id)

        items: list[SubscriptionItem] = []
        for sub in subscriptions.get("data", []):
            for item in sub.get("items", {}).get("data", []):
                lookup_key = (item.get("price") or {}).get("lookup_key") or ""
                items.append(
                    SubscriptionItem(
                        id=item["id"],
                        lookup_keys=[k.strip() for k in lookup_key.split(self._separator) if k.strip()],
                    )
                )
        return items

    async def report_usage(self, item_id: str, quantity: int) -> None:
        stripe = self._get_stripe()
        await asyncio.to_thread(
            stripe.SubscriptionItem.create_usage_record,
            item_id,
            quantity=quantity,
            timestamp=int(datetime.now(UTC).timestamp()),
            action="increment",
        )
        logger.info("Reported %d usage units to Stripe item %s", quantity, item_id)
