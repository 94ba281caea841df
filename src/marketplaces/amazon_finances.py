"""Amazon SP-API Finances（v0）

精算グループ・財務イベントの取得と、売上精算/手数料/返金の集計。
認証済みトランスポートは AmazonAdapter から借りる。
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.marketplaces.helpers import iso_utc, parse_datetime, to_float, to_int

logger = logging.getLogger(__name__)

FINANCES_PATH = "/finances/v0"

_EVENT_LISTS = (
    "ShipmentEventList",
    "RefundEventList",
    "ServiceFeeEventList",
    "AdjustmentEventList",
    "ChargebackEventList",
)


class AmazonFinances:
    """財務イベントAPIのラッパー

    Args:
        adapter: 初期化済みの AmazonAdapter（http プロパティを使う）
    """

    def __init__(self, adapter):
        self.adapter = adapter

    async def _pages(self, path: str, params: Dict[str, Any], list_key: str,
                     max_pages: int) -> List[Any]:
        """NextTokenを辿って payload[list_key] を集める"""
        collected: List[Any] = []
        next_token: Optional[str] = None
        for _ in range(max_pages):
            query = {"NextToken": next_token} if next_token else dict(params)
            data = await self.adapter.http.get_json(path, params=query)
            payload = data.get("payload") or {}
            collected.append(payload.get(list_key))
            next_token = payload.get("NextToken")
            if not next_token:
                break
        else:
            if next_token:
                logger.warning(f"Amazon Finances: {max_pages}ページで打ち切り ({path})")
        return collected

    async def list_financial_event_groups(
        self,
        started_after: datetime,
        started_before: Optional[datetime] = None,
        max_pages: int = 10,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "MaxResultsPerPage": 100,
            "FinancialEventGroupStartedAfter": iso_utc(started_after),
        }
        if started_before is not None:
            params["FinancialEventGroupStartedBefore"] = iso_utc(started_before)
        pages = await self._pages(f"{FINANCES_PATH}/financialEventGroups", params,
                                  "FinancialEventGroupList", max_pages)
        return [group for page in pages for group in (page or [])]

    async def list_financial_events(
        self,
        posted_after: datetime,
        posted_before: Optional[datetime] = None,
        max_pages: int = 10,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """財務イベントをイベント種別ごとに結合して返す"""
        params: Dict[str, Any] = {
            "MaxResultsPerPage": 100,
            "PostedAfter": iso_utc(posted_after),
        }
        if posted_before is not None:
            params["PostedBefore"] = iso_utc(posted_before)
        pages = await self._pages(f"{FINANCES_PATH}/financialEvents", params,
                                  "FinancialEvents", max_pages)
        merged: Dict[str, List[Dict[str, Any]]] = {key: [] for key in _EVENT_LISTS}
        for page in pages:
            for key, events in (page or {}).items():
                merged.setdefault(key, []).extend(events or [])
        return merged

    async def get_settlement_summary(self, start: datetime,
                                     end: Optional[datetime] = None) -> Dict[str, Any]:
        """締め済み（Closed）精算グループの集計"""
        groups = await self.list_financial_event_groups(start, end)
        closed = [g for g in groups if g.get("ProcessingStatus") == "Closed"]

        totals: Dict[str, float] = defaultdict(float)
        settlements = []
        for group in closed:
            original = group.get("OriginalTotal") or {}
            currency = original.get("CurrencyCode") or "USD"
            amount = to_float(original)
            totals[currency] += amount
            settlements.append({
                "settlement_id": group.get("FinancialEventGroupId"),
                "start": parse_datetime(group.get("FinancialEventGroupStart")),
                "end": parse_datetime(group.get("FinancialEventGroupEnd")),
                "deposit_date": parse_datetime(group.get("FundTransferDate")),
                "amount": amount,
                "currency": currency,
                "fund_transfer_status": group.get("FundTransferStatus"),
            })

        return {
            "settlement_count": len(closed),
            "totals_by_currency": {k: round(v, 2) for k, v in totals.items()},
            "settlements": settlements,
        }

    async def get_fee_summary(self, start: datetime,
                              end: Optional[datetime] = None) -> Dict[str, Any]:
        """サービス手数料を種別ごとに集計"""
        events = await self.list_financial_events(start, end)
        breakdown: Dict[str, float] = defaultdict(float)
        currency = None
        for event in events.get("ServiceFeeEventList", []):
            for fee in event.get("FeeList") or []:
                amount = fee.get("FeeAmount") or {}
                breakdown[fee.get("FeeType") or "Unknown"] += to_float(amount)
                currency = currency or amount.get("CurrencyCode")

        return {
            "total_fees": round(sum(breakdown.values()), 2),
            "fee_breakdown": {k: round(v, 2) for k, v in breakdown.items()},
            "currency": currency or self.adapter.currency,
        }

    async def get_refund_summary(self, start: datetime,
                                 end: Optional[datetime] = None) -> Dict[str, Any]:
        """返金イベント（明細単位の調整額）を集計

        種別ごとの件数は明細の数量を1回だけ数える。
        """
        events = await self.list_financial_events(start, end)
        by_type: Dict[str, Dict[str, float]] = defaultdict(lambda: {"count": 0, "amount": 0.0})
        total = 0.0
        units = 0
        currency = None
        refunds = events.get("RefundEventList", [])

        for event in refunds:
            for item in event.get("ShipmentItemAdjustmentList") or []:
                quantity = to_int(item.get("QuantityShipped"), 1)
                units += quantity
                counted = set()
                for charge in item.get("ItemChargeAdjustmentList") or []:
                    amount = charge.get("ChargeAmount") or {}
                    value = to_float(amount)
                    charge_type = charge.get("ChargeType") or "Unknown"
                    entry = by_type[charge_type]
                    if charge_type not in counted:
                        entry["count"] += quantity
                        counted.add(charge_type)
                    entry["amount"] += value
                    total += value
                    currency = currency or amount.get("CurrencyCode")

        return {
            "total_refunds": round(total, 2),
            "refund_count": len(refunds),
            "refunded_units": units,
            "currency": currency or self.adapter.currency,
            "refunds_by_type": {
                k: {"count": v["count"], "amount": round(v["amount"], 2)}
                for k, v in by_type.items()
            },
        }
