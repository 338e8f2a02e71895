"""DynamoDB stores for levels and their append-only touches.

Both live in the levels table: level rows under ``LEVEL#<symbol>#<tf>`` and
touch rows under ``TOUCH#<level id>`` keyed by bar time.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Mapping

from botocore.exceptions import ClientError

from common.utils import from_epoch_ms, to_epoch_ms
from core.domain.models.Level import Level, LevelStrength, LevelType
from core.domain.models.Touch import Touch, TouchType
from core.errors import VersionConflictError

from .dynamo_store import (
    DynamoTable,
    deserialize_item,
    is_conditional_failure,
    ms_or_none,
    serialize,
    serialize_item,
)

logger = logging.getLogger("flagbot.dynamo_store.levels")


def _level_pk(symbol: str, timeframe: str) -> str:
    return f"LEVEL#{symbol}#{timeframe}"


def level_to_item(level: Level) -> dict[str, Any]:
    return {
        "PK": _level_pk(level.symbol, level.timeframe),
        "SK": f"LEVEL#{level.id}",
        "id": level.id,
        "symbol": level.symbol,
        "timeframe": level.timeframe,
        "levelType": level.level_type.value,
        "price": level.price,
        "priceMin": level.price_min,
        "priceMax": level.price_max,
        "strength": level.strength.value,
        "confidence": level.confidence,
        "touchCount": level.touch_count,
        "bounceCount": level.bounce_count,
        "breakCount": level.break_count,
        "memberCount": level.member_count,
        "reconfirmationCount": level.reconfirmation_count,
        "sources": list(level.sources),
        "isActive": level.is_active,
        "firstDetected": level.first_detected,
        "lastConfirmed": level.last_confirmed,
        "invalidatedAt": level.invalidated_at,
        "lastTouchAt": level.last_touch_at,
        "metadata": dict(level.metadata),
        "version": level.version,
    }


def level_from_item(item: Mapping[str, Any]) -> Level:
    return Level(
        id=item["id"],
        symbol=item["symbol"],
        timeframe=item["timeframe"],
        level_type=LevelType(item["levelType"]),
        price=float(item["price"]),
        price_min=None if item.get("priceMin") is None else float(item["priceMin"]),
        price_max=None if item.get("priceMax") is None else float(item["priceMax"]),
        strength=LevelStrength(item["strength"]),
        confidence=float(item["confidence"]),
        touch_count=int(item.get("touchCount", 1)),
        bounce_count=int(item.get("bounceCount", 0)),
        break_count=int(item.get("breakCount", 0)),
        member_count=int(item.get("memberCount", 1)),
        reconfirmation_count=int(item.get("reconfirmationCount", 0)),
        sources=list(item.get("sources", [])),
        is_active=bool(item.get("isActive", True)),
        first_detected=from_epoch_ms(item["firstDetected"]),
        last_confirmed=from_epoch_ms(item["lastConfirmed"]),
        invalidated_at=ms_or_none(item.get("invalidatedAt")),
        last_touch_at=ms_or_none(item.get("lastTouchAt")),
        metadata=dict(item.get("metadata", {})),
        version=int(item.get("version", 0)),
    )


class LevelStore(DynamoTable):
    store_name = "level_store"

    def __init__(
        self,
        table_name: str | None = None,
        *,
        dynamo_client: Any | None = None,
        region_name: str | None = None,
    ) -> None:
        super().__init__(
            table_name,
            dynamo_client=dynamo_client,
            region_name=region_name,
            env_var="DDB_TABLE_LEVELS",
        )

    def list_levels(
        self,
        symbol: str,
        timeframe: str,
        *,
        active_only: bool = True,
        min_confidence: float = 0.0,
    ) -> list[Level]:
        params: dict[str, Any] = {
            "KeyConditionExpression": "PK = :pk",
            "ExpressionAttributeValues": {":pk": serialize(_level_pk(symbol, timeframe))},
        }
        if active_only:
            params["FilterExpression"] = "#active = :true AND #confidence >= :min_conf"
            params["ExpressionAttributeNames"] = {"#active": "isActive", "#confidence": "confidence"}
            params["ExpressionAttributeValues"][":true"] = serialize(True)
            params["ExpressionAttributeValues"][":min_conf"] = serialize(min_confidence)
        levels = [level_from_item(item) for item in self._query_all(**params)]
        return sorted(levels, key=lambda level: (-level.confidence, level.price))

    def get(self, symbol: str, timeframe: str, level_id: str) -> Level | None:
        response = self._call(
            "get_item",
            Key=self._key(_level_pk(symbol, timeframe), f"LEVEL#{level_id}"),
            ConsistentRead=True,
        )
        if "Item" not in response:
            return None
        return level_from_item(deserialize_item(response["Item"]))

    def find_similar(
        self,
        symbol: str,
        timeframe: str,
        level_type: LevelType,
        price: float,
        tolerance: float,
    ) -> Level | None:
        """Closest active level of ``level_type`` within ``tolerance`` of ``price``."""

        low = price * (1 - tolerance)
        high = price * (1 + tolerance)
        items = self._query_all(
            KeyConditionExpression="PK = :pk",
            FilterExpression="#type = :type AND #active = :true AND #price BETWEEN :low AND :high",
            ExpressionAttributeNames={"#type": "levelType", "#active": "isActive", "#price": "price"},
            ExpressionAttributeValues={
                ":pk": serialize(_level_pk(symbol, timeframe)),
                ":type": serialize(level_type.value),
                ":true": serialize(True),
                ":low": serialize(min(low, high)),
                ":high": serialize(max(low, high)),
            },
        )
        if not items:
            return None
        return min((level_from_item(item) for item in items), key=lambda level: abs(level.price - price))

    def insert(self, level: Level) -> bool:
        try:
            self._call(
                "put_item",
                Item=serialize_item(level_to_item(replace(level, version=1))),
                ConditionExpression="attribute_not_exists(PK) AND attribute_not_exists(SK)",
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            logger.info("level_store.insert.duplicate", extra={"level_id": level.id})
            return False
        level.version = 1
        logger.info("level_store.insert.success", extra={"level_id": level.id, "type": level.level_type.value})
        return True

    def update(self, level: Level, prev_version: int) -> Level:
        stored = replace(level, version=prev_version + 1)
        try:
            self._call(
                "put_item",
                Item=serialize_item(level_to_item(stored)),
                ConditionExpression="#version = :prev_version",
                ExpressionAttributeNames={"#version": "version"},
                ExpressionAttributeValues={":prev_version": serialize(prev_version)},
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            logger.warning("level_store.update.conflict", extra={"level_id": level.id, "prev_version": prev_version})
            raise VersionConflictError(self.store_name, level.id) from exc
        return stored

    def delete(self, symbol: str, timeframe: str, level_id: str) -> None:
        self._call("delete_item", Key=self._key(_level_pk(symbol, timeframe), f"LEVEL#{level_id}"))
        logger.info("level_store.delete.success", extra={"level_id": level_id})


class TouchStore(DynamoTable):
    store_name = "touch_store"

    def __init__(
        self,
        table_name: str | None = None,
        *,
        dynamo_client: Any | None = None,
        region_name: str | None = None,
    ) -> None:
        super().__init__(
            table_name,
            dynamo_client=dynamo_client,
            region_name=region_name,
            env_var="DDB_TABLE_LEVELS",
        )

    def append(self, touch: Touch) -> bool:
        item = {
            "PK": f"TOUCH#{touch.level_id}",
            "SK": f"BAR#{to_epoch_ms(touch.bar_timestamp):013d}",
            "levelId": touch.level_id,
            "barTimestamp": touch.bar_timestamp,
            "touchPrice": touch.touch_price,
            "touchType": touch.touch_type.value,
            "held": touch.held,
            "breakStrength": touch.break_strength,
            "barContext": dict(touch.bar_context),
        }
        try:
            self._call(
                "put_item",
                Item=serialize_item(item),
                ConditionExpression="attribute_not_exists(PK) AND attribute_not_exists(SK)",
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            return False
        return True

    def list_for_level(self, level_id: str) -> list[Touch]:
        items = self._query_all(
            KeyConditionExpression="PK = :pk",
            ExpressionAttributeValues={":pk": serialize(f"TOUCH#{level_id}")},
        )
        return [
            Touch(
                level_id=item["levelId"],
                bar_timestamp=from_epoch_ms(item["barTimestamp"]),
                touch_price=float(item["touchPrice"]),
                touch_type=TouchType(item["touchType"]),
                held=bool(item["held"]),
                break_strength=float(item.get("breakStrength", 0.0)),
                bar_context=dict(item.get("barContext", {})),
            )
            for item in items
        ]
