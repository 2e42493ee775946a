"""
Payment Gateway capability

PaymentGateway is the seam the escrow orchestrator and wallet service talk to.
RazorpayGateway is the production adapter: orders, checkout signature
verification, webhook signature verification and payouts over aiohttp.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.webhook_security_service import validate_checkout_signature, validate_webhook_signature
from utils.error_handler import GatewayTimeout, GatewayUnavailable, InvalidPayoutDetails

logger = logging.getLogger(__name__)


@dataclass
class GatewayOrder:
    order_id: str
    amount_minor: int
    currency: str
    receipt: str
    status: str = "created"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayTransfer:
    transfer_id: str
    mode: str
    status: str = "processing"


@dataclass
class PayoutDestination:
    """Bank account + IFSC, or a UPI id"""

    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    upi_id: Optional[str] = None
    account_holder_name: Optional[str] = None

    @property
    def mode(self) -> str:
        return "UPI" if self.upi_id else "IMPS"

    def validate(self) -> "PayoutDestination":
        has_bank = bool(self.account_number and self.ifsc_code)
        if not has_bank and not self.upi_id:
            raise InvalidPayoutDetails("Bank account with IFSC code or UPI id is required")
        return self

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "account_number": self.account_number,
            "ifsc_code": self.ifsc_code,
            "upi_id": self.upi_id,
            "account_holder_name": self.account_holder_name,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PayoutDestination":
        data = data or {}
        return cls(
            account_number=data.get("account_number"),
            ifsc_code=data.get("ifsc_code"),
            upi_id=data.get("upi_id"),
            account_holder_name=data.get("account_holder_name"),
        )


class PaymentGateway(ABC):
    """External payment gateway; errors surface as GatewayTimeout / GatewayUnavailable"""

    @abstractmethod
    async def create_order(
        self, amount_minor: int, currency: str, receipt: str, metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayOrder:
        ...

    @abstractmethod
    def verify_capture(self, order_id: str, signature: Optional[str], payment_id: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    def verify_webhook(self, body: bytes, signature: Optional[str]) -> bool:
        ...

    @abstractmethod
    async def transfer_to_payee(
        self, destination: PayoutDestination, amount_minor: int, reference: str
    ) -> GatewayTransfer:
        ...

    async def close(self) -> None:
        return None


class RazorpayGateway(PaymentGateway):
    """Razorpay-compatible REST adapter"""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        payout_account: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.key_id = key_id or Config.GATEWAY_KEY_ID
        self.key_secret = key_secret or Config.GATEWAY_KEY_SECRET
        self.webhook_secret = webhook_secret or Config.GATEWAY_WEBHOOK_SECRET
        self.base_url = (base_url or Config.GATEWAY_BASE_URL).rstrip("/")
        self.payout_account = payout_account or Config.GATEWAY_PAYOUT_ACCOUNT
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.GATEWAY_TIMEOUT_SECONDS)
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                auth=aiohttp.BasicAuth(self.key_id, self.key_secret),
                timeout=self.timeout,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        return self._session

    async def _request(self, method: str, endpoint: str, data: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        session = self._get_session()

        try:
            async with session.request(method, url, json=data) as response:
                response_data = await response.json(content_type=None)

                if response.status in (200, 201):
                    logger.info(f"✅ GATEWAY: {method} {endpoint} succeeded")
                    return response_data

                description = (response_data or {}).get("error", {}).get("description", response_data)
                logger.error(f"❌ GATEWAY: {method} {endpoint} failed: {response.status} - {description}")
                raise GatewayUnavailable(
                    f"Gateway rejected {endpoint}: {description}", status=response.status
                )

        except asyncio.TimeoutError as e:
            logger.error(f"⏰ GATEWAY: Timeout calling {endpoint} ({self.base_url})")
            raise GatewayTimeout(f"Gateway timed out on {endpoint}") from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ GATEWAY: Connection failed calling {endpoint}: {type(e).__name__}: {e}")
            raise GatewayUnavailable(f"Gateway unreachable: {e}") from e

    async def create_order(
        self, amount_minor: int, currency: str, receipt: str, metadata: Optional[Dict[str, Any]] = None
    ) -> GatewayOrder:
        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": {k: str(v) for k, v in (metadata or {}).items()},
        }
        data = await self._request("POST", "/orders", payload)
        return GatewayOrder(
            order_id=data["id"],
            amount_minor=data.get("amount", amount_minor),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
            status=data.get("status", "created"),
            raw=data,
        )

    def verify_capture(self, order_id: str, signature: Optional[str], payment_id: Optional[str] = None) -> bool:
        return validate_checkout_signature(order_id, payment_id, signature, self.key_secret)

    def verify_webhook(self, body: bytes, signature: Optional[str]) -> bool:
        return validate_webhook_signature(body, signature, self.webhook_secret)

    async def transfer_to_payee(
        self, destination: PayoutDestination, amount_minor: int, reference: str
    ) -> GatewayTransfer:
        destination.validate()
        if destination.upi_id:
            fund_account = {"account_type": "vpa", "vpa": {"address": destination.upi_id}}
        else:
            fund_account = {
                "account_type": "bank_account",
                "bank_account": {
                    "name": destination.account_holder_name or "",
                    "ifsc": destination.ifsc_code,
                    "account_number": destination.account_number,
                },
            }

        payload = {
            "account_number": self.payout_account,
            "fund_account": fund_account,
            "amount": amount_minor,
            "currency": Config.CURRENCY,
            "mode": destination.mode,
            "purpose": "payout",
            "reference_id": reference,
            "queue_if_low_balance": True,
        }
        data = await self._request("POST", "/payouts", payload)
        return GatewayTransfer(
            transfer_id=data["id"],
            mode=data.get("mode", destination.mode),
            status=data.get("status", "processing"),
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.info("🔌 GATEWAY: HTTP session closed")
