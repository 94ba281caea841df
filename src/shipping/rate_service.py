"""配送料金サービス

キャリアファクトリー（build_carrier_factory）上の初期化済みキャリアに
料金照会・追跡・住所検証をまとめて投げる。1キャリアの失敗は他に影響させない。
"""

import asyncio
import logging
from typing import Dict, List, Optional

from src.marketplaces.errors import MarketplaceError, ShippingError
from src.marketplaces.factory import AdapterFactory
from src.marketplaces.models import Address
from src.shipping.base import (
    AddressValidation,
    RateRequest,
    ShipmentTracking,
    ShippingProvider,
    ShippingRate,
)

logger = logging.getLogger(__name__)


class ShippingRateService:
    """複数キャリアの料金比較・追跡"""

    def __init__(self, factory: AdapterFactory):
        """
        Args:
            factory: キャリア用 AdapterFactory（create_adapterで初期化済みのものを使う）
        """
        self.factory = factory
        self.last_errors: Dict[str, str] = {}

    def _providers(self, carriers: Optional[List[str]] = None) -> List[ShippingProvider]:
        carrier_ids = carriers or self.factory.active_marketplace_ids()
        if not carrier_ids:
            raise ShippingError("No shipping carriers are available")
        return [self.factory.get_adapter(c) for c in carrier_ids]

    async def get_rates(self, request: RateRequest,
                        carriers: Optional[List[str]] = None) -> List[ShippingRate]:
        """全キャリアの料金を価格昇順で返す

        キャリア単位の失敗は last_errors に記録してスキップする。
        """
        providers = [
            p for p in self._providers(carriers)
            if p.supports_country(request.destination.country)
        ]
        self.last_errors = {}
        results = await asyncio.gather(
            *(p.get_rates(request) for p in providers), return_exceptions=True
        )

        rates: List[ShippingRate] = []
        for provider, result in zip(providers, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                self.last_errors[provider.carrier_id] = str(result)
                logger.warning(f"料金取得失敗 ({provider.carrier_id}): {result}")
                continue
            rates.extend(r for r in result if r.price > 0)

        rates.sort(key=lambda r: r.price)
        logger.info(f"配送料金取得: {len(rates)}件 ({len(providers)}キャリア)")
        return rates

    async def get_cheapest_rate(self, request: RateRequest,
                                carriers: Optional[List[str]] = None) -> Optional[ShippingRate]:
        rates = await self.get_rates(request, carriers)
        return rates[0] if rates else None

    async def get_tracking(self, tracking_number: str,
                           carrier: Optional[str] = None) -> ShipmentTracking:
        """追跡情報を取得（carrier未指定なら順に試す）"""
        providers = self._providers([carrier] if carrier else None)
        errors = []
        for provider in providers:
            try:
                return await provider.get_tracking(tracking_number)
            except MarketplaceError as e:
                logger.debug(f"追跡失敗 ({provider.carrier_id}): {e}")
                errors.append(f"{provider.carrier_id}: {e.message}")
        raise ShippingError(
            f"Tracking number {tracking_number} not found ({'; '.join(errors)})",
            status=404,
        )

    async def validate_address(self, address: Address,
                               carrier: Optional[str] = None) -> AddressValidation:
        provider = self._providers([carrier] if carrier else None)[0]
        return await provider.validate_address(address)
