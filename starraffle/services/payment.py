"""
Payment bridge: capture of entry fees, prize payouts and refunds in Telegram Stars.

The bridge is an external collaborator; nothing here holds a database lock.
"""
import abc
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from starraffle.core.errors import PaymentBridgeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureResult:
    ok: bool
    charge_id: Optional[str] = None
    reason: Optional[str] = None


class PaymentBridge(abc.ABC):
    @abc.abstractmethod
    async def verify_and_capture(self, participant_id: int, amount: int, proof: str) -> CaptureResult:
        ...

    @abc.abstractmethod
    async def payout(self, participant_id: int, amount: int, raffle_id: int) -> str:
        """Send a prize; returns the provider receipt id or raises ``PaymentBridgeError``."""

    @abc.abstractmethod
    async def refund(self, participant_id: int, amount: int, reason: str) -> str:
        """Return an entry fee; returns the provider receipt id or raises ``PaymentBridgeError``."""

    async def aclose(self) -> None:
        pass


class HttpPaymentBridge(PaymentBridge):
    """
    JSON-over-HTTP client for the Stars payment service.

    POST /captures  {participant_id, amount, proof} -> {status, amount, charge_id}
    POST /payouts   {participant_id, amount, raffle_id} -> {receipt_id}
    POST /refunds   {participant_id, amount, reason} -> {receipt_id}
    """

    def __init__(self, base_url: str, token: str = "", timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)

    async def _post(self, path: str, body: dict) -> dict:
        try:
            resp = await self._client.post(path, json=body)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise PaymentBridgeError(f"{path} returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise PaymentBridgeError(f"{path} failed: {e}") from e

    async def verify_and_capture(self, participant_id: int, amount: int, proof: str) -> CaptureResult:
        try:
            data = await self._post("/captures", {
                "participant_id": participant_id,
                "amount": amount,
                "proof": proof,
            })
        except PaymentBridgeError as e:
            logger.warning("Capture for %s failed: %s", participant_id, e)
            return CaptureResult(ok=False, reason="Transaction verification failed")

        if data.get("status") != "completed":
            return CaptureResult(ok=False, reason="Transaction is not completed")
        if data.get("amount") != amount:
            return CaptureResult(ok=False, reason="Transaction amount does not match the bid")
        return CaptureResult(ok=True, charge_id=str(data.get("charge_id") or proof))

    async def payout(self, participant_id: int, amount: int, raffle_id: int) -> str:
        data = await self._post("/payouts", {
            "participant_id": participant_id,
            "amount": amount,
            "raffle_id": raffle_id,
        })
        return str(data.get("receipt_id", ""))

    async def refund(self, participant_id: int, amount: int, reason: str) -> str:
        data = await self._post("/refunds", {
            "participant_id": participant_id,
            "amount": amount,
            "reason": reason,
        })
        return str(data.get("receipt_id", ""))

    async def aclose(self) -> None:
        await self._client.aclose()
