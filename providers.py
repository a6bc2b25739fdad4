"""Game provider integration: player ID lookup, order fulfilment, catalog feed.

:class:`VipResellerClient` speaks the provider's HTTP API over aiohttp.
:class:`GameProviderService` is what the rest of the bot uses: it cleans
inputs, bounds every call with a timeout and turns transport failures into
:class:`ProviderError`.
"""

import asyncio
import hashlib
import logging
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
from pydantic import BaseModel

from data_models import PlayerValidation
from sanitizer import clean_provider_input

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The provider could not be reached or refused the request outright."""


class ProviderOrder(BaseModel):
    success: bool
    order_id: Optional[str] = None
    status: Optional[str] = None
    serial: Optional[str] = None
    message: Optional[str] = None


class GameProviderPort(Protocol):
    async def get_player_info(self, validation_code: str, player_id: str, zone_id: Optional[str]) -> PlayerValidation: ...

    async def order_top_up(self, service_code: str, player_id: str, zone_id: Optional[str], merchant_ref: str) -> ProviderOrder: ...

    async def get_services(self, game_code: Optional[str] = None) -> List[Dict[str, Any]]: ...


class VipResellerClient:
    """HTTP client for the VIP-Reseller game feature API."""

    def __init__(self, api_id: str, api_key: str, base_url: str, timeout: float = 30.0):
        self.api_id = (api_id or "").strip()
        self.api_key = (api_key or "").strip()
        self.base_url = base_url
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_id and self.api_key)

    def generate_sign(self) -> str:
        return hashlib.md5(f"{self.api_id}{self.api_key}".encode()).hexdigest()

    async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise ProviderError("Provider credentials are not configured")

        form = {k: str(v) for k, v in payload.items() if v is not None}
        form.setdefault("key", self.api_key)
        form.setdefault("sign", self.generate_sign())
        form.setdefault("api_id", self.api_id)

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                self.base_url,
                data=form,
                headers={"Authorization": f"Bearer {self.api_key}"},
            ) as response:
                data = await response.json(content_type=None)

        logger.debug(f"Provider response for type={payload.get('type')}: {str(data)[:500]}")

        if not isinstance(data, dict):
            raise ProviderError(f"Unexpected provider response: {str(data)[:200]}")

        message = str(data.get("message") or "")
        if data.get("result") is False and ("IP" in message or "Signature" in message):
            raise ProviderError(message)
        return data

    async def get_player_info(self, validation_code, player_id, zone_id=None) -> PlayerValidation:
        data = await self._request({
            "type": "nickname",
            "code": validation_code,
            "target": player_id,
            "additional_target": zone_id or "",
        })

        if data.get("result") is True:
            logger.info(f"Nickname check OK | code={validation_code} player={player_id} zone={zone_id}")
            return PlayerValidation(success=True, nickname=str(data.get("data") or "") or None)

        logger.warning(
            f"Nickname check failed | code={validation_code} player={player_id} zone={zone_id} "
            f"message={data.get('message')}"
        )
        return PlayerValidation(success=False, message=data.get("message") or "ID tidak ditemukan")

    async def order_top_up(self, service_code, player_id, zone_id, merchant_ref) -> ProviderOrder:
        data = await self._request({
            "type": "order",
            "service": service_code,
            "data_no": player_id,
            "data_zone": zone_id or "",
        })

        order = data.get("data")
        if data.get("result") is True and isinstance(order, dict):
            return ProviderOrder(
                success=True,
                order_id=str(order.get("trxid") or "") or None,
                status=order.get("status") or "processing",
                serial=order.get("sn") or order.get("note"),
                message=data.get("message") or "Order berhasil",
            )
        return ProviderOrder(success=False, message=data.get("message") or "Order gagal")

    async def get_services(self, game_code=None) -> List[Dict[str, Any]]:
        data = await self._request({"type": "services", "filter_game": game_code})
        services = data.get("data")
        if data.get("result") is not True or not isinstance(services, list):
            return []

        result = []
        for service in services:
            price = service.get("price") or {}
            try:
                basic = int(price.get("basic") or 0) if isinstance(price, dict) else int(price)
            except (TypeError, ValueError):
                basic = 0
            if basic <= 0:
                continue
            result.append({
                "code": service.get("code"),
                "game": service.get("game"),
                "name": service.get("name"),
                "price": basic,
                "status": service.get("status") == "available",
                "description": service.get("description") or None,
            })
        return result


class GameProviderService:
    def __init__(self, client: GameProviderPort, timeout: float = 15.0):
        self.client = client
        self.timeout = timeout

    async def _bounded(self, what: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(f"{what} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise ProviderError(f"{what} failed: {e}") from e

    async def validate_player(
        self,
        validation_code: str,
        player_id: str,
        zone_id: Optional[str] = None,
    ) -> PlayerValidation:
        """Look up the nickname behind a player ID.

        Returns:
            The provider's answer. ``success=False`` means the provider
            answered but did not accept the ID.

        Raises:
            ProviderError: On timeout or when the provider cannot be reached.
        """
        clean_player = clean_provider_input(player_id)
        clean_zone = clean_provider_input(zone_id) or None
        return await self._bounded(
            "Player validation",
            self.client.get_player_info(validation_code, clean_player, clean_zone),
        )

    async def create_order(
        self,
        service_code: str,
        player_id: str,
        zone_id: Optional[str],
        merchant_ref: str,
    ) -> ProviderOrder:
        clean_player = clean_provider_input(player_id)
        clean_zone = clean_provider_input(zone_id) or None
        logger.info(f"Placing provider order {service_code} for player {clean_player} ({merchant_ref})")
        return await self._bounded(
            "Provider order",
            self.client.order_top_up(service_code, clean_player, clean_zone, merchant_ref),
        )

    async def get_services(self, game_code: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._bounded("Service list", self.client.get_services(game_code))
