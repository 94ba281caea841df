"""Amazon SP-API Product Pricing（v0）

自社価格・競合価格の取得とBuy Box比較。
"""

import logging
from typing import Any, Dict, List, Optional

from src.marketplaces.errors import ValidationError
from src.marketplaces.helpers import chunked, to_float, to_int

logger = logging.getLogger(__name__)

PRICING_PATH = "/products/pricing/v0"

# 1リクエストあたりのSKU上限
MAX_SKUS_PER_REQUEST = 20

# Buy Box価格の CompetitivePriceId
BUY_BOX_PRICE_ID = "1"


def _landed(price: Dict[str, Any]) -> float:
    """出品価格 + 送料"""
    return to_float(price.get("ListingPrice")) + to_float(price.get("Shipping"))


class AmazonPricing:
    """価格APIのラッパー

    Args:
        adapter: 初期化済みの AmazonAdapter
    """

    def __init__(self, adapter):
        self.adapter = adapter

    async def _get(self, endpoint: str, skus: List[str]) -> List[Dict[str, Any]]:
        if not skus:
            raise ValidationError("At least one SKU is required")
        results: List[Dict[str, Any]] = []
        for chunk in chunked(list(skus), MAX_SKUS_PER_REQUEST):
            data = await self.adapter.http.get_json(f"{PRICING_PATH}/{endpoint}", params={
                "MarketplaceId": self.adapter.amazon_marketplace_id,
                "ItemType": "Sku",
                "Skus": ",".join(chunk),
            })
            results.extend(data.get("payload") or [])
        return results

    async def get_competitive_pricing(self, skus: List[str]) -> List[Dict[str, Any]]:
        """SKUごとの最安値・Buy Box価格・出品者数"""
        results = []
        for item in await self._get("competitivePrice", skus):
            if item.get("status") != "Success":
                logger.warning(f"Amazon競合価格取得失敗: {item.get('SellerSKU')} "
                               f"status={item.get('status')}")
                continue
            product = item.get("Product") or {}
            competitive = product.get("CompetitivePricing") or {}
            prices = competitive.get("CompetitivePrices") or []
            results.append({
                "sku": item.get("SellerSKU"),
                "asin": ((product.get("Identifiers") or {}).get("MarketplaceASIN") or {}).get("ASIN"),
                "lowest_price": min((_landed(p.get("Price") or {}) for p in prices), default=None),
                "buy_box_price": self._buy_box_price(prices),
                "is_buy_box_winner": any(
                    p.get("CompetitivePriceId") == BUY_BOX_PRICE_ID and p.get("belongsToRequester")
                    for p in prices
                ),
                "number_of_offers": sum(
                    to_int(n.get("Count")) for n in competitive.get("NumberOfOfferListings") or []
                ),
            })
        return results

    @staticmethod
    def _buy_box_price(prices: List[Dict[str, Any]]) -> Optional[float]:
        for p in prices:
            if p.get("CompetitivePriceId") == BUY_BOX_PRICE_ID:
                return to_float((p.get("Price") or {}).get("ListingPrice"), None)
        return None

    async def get_my_price(self, sku: str) -> Optional[float]:
        for item in await self._get("price", [sku]):
            if item.get("status") != "Success":
                continue
            offers = (item.get("Product") or {}).get("Offers") or []
            if offers:
                return to_float((offers[0].get("BuyingPrice") or {}).get("ListingPrice"), None)
        return None

    async def get_price_comparison(self, sku: str) -> Optional[Dict[str, Any]]:
        """自社価格と競合価格の比較（データが無ければNone）"""
        competitive = await self.get_competitive_pricing([sku])
        if not competitive:
            return None
        info = competitive[0]
        your_price = await self.get_my_price(sku)
        lowest = info["lowest_price"]
        return {
            "sku": sku,
            "asin": info["asin"],
            "your_price": your_price,
            "lowest_price": lowest,
            "buy_box_price": info["buy_box_price"],
            "price_difference": (round(your_price - lowest, 2)
                                 if your_price is not None and lowest is not None else None),
            "is_buy_box_winner": info["is_buy_box_winner"],
            "number_of_offers": info["number_of_offers"],
        }
