"""
Wallet ledger adapter.

Credits captain earnings / tips and charges cancellation fees on the
external wallet ledger. Without a configured ledger URL the entry is only
logged and a local reference returned.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

import httpx

from ridehail.config import Settings, get_settings

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    pass


@dataclass(frozen=True)
class LedgerResult:
    status: str  # SUCCESS | FAILED
    reference: str | None = None


class WalletLedger:
    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def credit(self, owner_id: str, owner_type: str, amount: Decimal, category: str, reference: str) -> LedgerResult:
        return await self._post_entry("credit", owner_id, owner_type, amount, category, reference)

    async def charge(self, owner_id: str, owner_type: str, amount: Decimal, category: str, reference: str) -> LedgerResult:
        return await self._post_entry("debit", owner_id, owner_type, amount, category, reference)

    async def _post_entry(
        self,
        direction: str,
        owner_id: str,
        owner_type: str,
        amount: Decimal,
        category: str,
        reference: str,
    ) -> LedgerResult:
        """
        Sends the entry with bounded retries (exponential backoff).
        The idempotency key is derived from the business reference so a
        retried call never double-books.
        """
        if amount <= 0:
            return LedgerResult(status="SUCCESS", reference=None)

        idempotency_key = f"{category}:{reference}:{owner_id}"
        attempts = max(1, self.settings.ledger_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                ref = await self._call_ledger(direction, owner_id, owner_type, amount, category, reference, idempotency_key)
                logger.info(
                    "Ledger %s ok: owner=%s amount=%s category=%s ref=%s",
                    direction, owner_id, amount, category, ref,
                )
                return LedgerResult(status="SUCCESS", reference=ref)
            except (LedgerError, httpx.HTTPError) as e:
                if attempt == attempts:
                    logger.error("Ledger %s failed after %d attempts: %s", direction, attempts, e)
                    return LedgerResult(status="FAILED")
                await asyncio.sleep(2 ** attempt * 0.1)

        return LedgerResult(status="FAILED")

    async def _call_ledger(
        self,
        direction: str,
        owner_id: str,
        owner_type: str,
        amount: Decimal,
        category: str,
        reference: str,
        idempotency_key: str,
    ) -> str:
        if not self.settings.ledger_base_url:
            return f"LOCAL-{uuid.uuid4().hex[:12].upper()}"

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.ledger_timeout_seconds)
        resp = await self._client.post(
            f"{self.settings.ledger_base_url.rstrip('/')}/entries",
            headers={
                "Authorization": f"Bearer {self.settings.ledger_api_key}",
                "Idempotency-Key": idempotency_key,
            },
            json={
                "direction": direction,
                "owner_id": owner_id,
                "owner_type": owner_type,
                "amount": str(amount),
                "currency": self.settings.currency,
                "category": category,
                "reference": reference,
            },
        )
        if resp.status_code >= 400:
            raise LedgerError(f"Ledger error {resp.status_code}: {resp.text}")
        return resp.json()["id"]
