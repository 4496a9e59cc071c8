"""
Custody / settlement provider adapter.

The core only records outcomes: a definitive rejection becomes
SettlementFailure, while timeouts and server errors after submission become
SettlementOutcomeUnknown so the reservation stays held until an operator
confirms what actually happened on-chain.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import aiohttp

from config import Config
from services.fulfillment_errors import (
    CustodyNotConfigured, CustodyProviderError, SettlementFailure, SettlementOutcomeUnknown,
)
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

FAILED_TRANSFER_STATUSES = {"REJECTED", "FAILED", "BLOCKED", "CANCELLED", "TIMEOUT"}


@dataclass
class SendResult:
    tx_hash: Optional[str]
    provider_transfer_id: Optional[str] = None
    provider_status: Optional[str] = None
    confirmations: int = 0
    confirmed: bool = False

    @property
    def settlement_reference(self) -> Optional[str]:
        return self.tx_hash or self.provider_transfer_id


class CustodyProvider(ABC):
    """Executes on-chain transfers and reports custody balances"""

    @abstractmethod
    async def send_asset(
        self, destination: str, amount: Decimal, asset_type: str, idempotency_key: Optional[str] = None
    ) -> SendResult:
        """Submit a transfer; raises SettlementFailure or SettlementOutcomeUnknown"""

    @abstractmethod
    async def get_onchain_balance(self, asset_type: str) -> Decimal:
        """Balance reported by the custodian; raises CustodyProviderError"""


class FireblocksCustodyClient(CustodyProvider):
    """Fireblocks-style REST custody client"""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        vault_id: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.api_url = (api_url or Config.CUSTODY_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else Config.CUSTODY_API_KEY
        self.vault_id = vault_id or Config.CUSTODY_VAULT_ID
        self.timeout_seconds = timeout_seconds or Config.CUSTODY_TIMEOUT_SECONDS

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _asset_id(self, asset_type: str) -> str:
        return Config.CUSTODY_ASSET_IDS.get(asset_type, asset_type)

    def _vault_for(self, asset_type: str) -> str:
        if asset_type == "COMPANY_USDC":
            return Config.CUSTODY_COMPANY_VAULT_ID
        return self.vault_id

    async def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[int, Any]:
        headers = {"X-API-Key": self.api_key or "", "Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(method, f"{self.api_url}{path}", json=payload, headers=headers) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {"message": await response.text()}
                return response.status, body

    @staticmethod
    def _error_message(body: Any, status: int) -> str:
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)
        return f"HTTP {status}: {body}"

    async def send_asset(
        self, destination: str, amount: Decimal, asset_type: str, idempotency_key: Optional[str] = None
    ) -> SendResult:
        if not self.is_configured:
            raise CustodyNotConfigured("Custody provider not configured. Add CUSTODY_API_KEY.")

        payload = {
            "assetId": self._asset_id(asset_type),
            "source": {"type": "VAULT_ACCOUNT", "id": self._vault_for(asset_type)},
            "destination": {"type": "ONE_TIME_ADDRESS", "oneTimeAddress": {"address": destination}},
            "amount": str(MonetaryDecimal.quantize_crypto(amount)),
            "externalTxId": idempotency_key,
            "note": f"Fulfillment {idempotency_key or ''}".strip(),
        }
        logger.info(f"📤 CUSTODY_SEND: {payload['amount']} {asset_type} to {destination[:10]}...")

        try:
            status, body = await self._request("POST", "/transactions", payload, idempotency_key)
        except asyncio.TimeoutError as e:
            raise SettlementOutcomeUnknown(f"Custody request timed out after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise SettlementOutcomeUnknown(f"Custody connection error: {e}") from e

        if status >= 500:
            raise SettlementOutcomeUnknown(f"Custody provider error {status}: {self._error_message(body, status)}")
        if status >= 400:
            raise SettlementFailure(self._error_message(body, status), provider_code=str(status))
        if not isinstance(body, dict):
            raise SettlementOutcomeUnknown(f"Unexpected custody response: {body}")

        transfer_status = str(body.get("status", "")).upper()
        if transfer_status in FAILED_TRANSFER_STATUSES:
            sub_status = body.get("subStatus")
            reason = f"{transfer_status}: {sub_status}" if sub_status else transfer_status
            raise SettlementFailure(reason, provider_code=transfer_status)

        confirmations = int(body.get("numOfConfirmations") or 0)
        result = SendResult(
            tx_hash=body.get("txHash"),
            provider_transfer_id=body.get("id"),
            provider_status=transfer_status or None,
            confirmations=confirmations,
            confirmed=transfer_status == "COMPLETED" and confirmations >= Config.REQUIRED_CONFIRMATIONS,
        )
        if not result.settlement_reference:
            raise SettlementOutcomeUnknown("Custody provider accepted transfer without any reference")
        return result

    async def get_onchain_balance(self, asset_type: str) -> Decimal:
        if not self.is_configured:
            raise CustodyNotConfigured("Custody provider not configured. Add CUSTODY_API_KEY.")
        path = f"/vault/accounts/{self._vault_for(asset_type)}/{self._asset_id(asset_type)}"
        try:
            status, body = await self._request("GET", path)
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise CustodyProviderError(f"Balance lookup failed for {asset_type}: {e}") from e
        if status != 200:
            raise CustodyProviderError(f"Balance lookup failed for {asset_type}: {self._error_message(body, status)}")
        try:
            return MonetaryDecimal.quantize_crypto(body["total"])
        except (KeyError, TypeError, ValueError) as e:
            raise CustodyProviderError(f"Unexpected balance payload for {asset_type}: {body}") from e


custody_client = FireblocksCustodyClient()
