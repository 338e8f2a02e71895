"""DynamoDB store for flag patterns and their lifecycle events."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping

from botocore.exceptions import ClientError

from common.utils import from_epoch_ms
from core.domain.models.Pattern import (
    FlagRating,
    Pattern,
    PatternEvent,
    PatternEventType,
    PatternStage,
    PatternType,
)
from core.errors import VersionConflictError

from .dynamo_store import (
    DynamoTable,
    deserialize_item,
    is_conditional_failure,
    ms_or_none,
    serialize,
    serialize_item,
)

logger = logging.getLogger("flagbot.dynamo_store.patterns")

_EVENT_ORDER = {event_type: index for index, event_type in enumerate(PatternEventType)}


def _pattern_pk(symbol: str, timeframe: str) -> str:
    return f"PATTERN#{symbol}#{timeframe}"


def _float_or_none(value: Any) -> float | None:
    return None if value is None else float(value)


def pattern_to_item(pattern: Pattern) -> dict[str, Any]:
    return {
        "PK": _pattern_pk(pattern.symbol, pattern.timeframe),
        "SK": f"PATTERN#{pattern.id}",
        "id": pattern.id,
        "symbol": pattern.symbol,
        "timeframe": pattern.timeframe,
        "patternType": pattern.pattern_type.value,
        "stage": pattern.stage.value,
        "confidence": pattern.confidence,
        "qualityScore": pattern.quality_score,
        "rating": pattern.rating.value,
        "poleStartTime": pattern.pole_start_time,
        "poleEndTime": pattern.pole_end_time,
        "poleStartPrice": pattern.pole_start_price,
        "poleEndPrice": pattern.pole_end_price,
        "poleLengthPct": pattern.pole_length_pct,
        "flagHigh": pattern.flag_high,
        "flagLow": pattern.flag_low,
        "flagSlope": pattern.flag_slope,
        "flagStartTime": pattern.flag_start_time,
        "flagEndTime": pattern.flag_end_time,
        "breakoutLevel": pattern.breakout_level,
        "poleAvgVolume": pattern.pole_avg_volume,
        "flagAvgVolume": pattern.flag_avg_volume,
        "volumeRatio": pattern.volume_ratio,
        "confluenceCount": pattern.confluence_count,
        "expiresAt": pattern.expires_at,
        "detectedAt": pattern.detected_at,
        "lastUpdated": pattern.last_updated,
        "breakoutTime": pattern.breakout_time,
        "breakoutPrice": pattern.breakout_price,
        "breakoutVolume": pattern.breakout_volume,
        "failureReason": pattern.failure_reason,
        "failurePrice": pattern.failure_price,
        "signalId": pattern.signal_id,
        "version": pattern.version,
    }


def pattern_from_item(item: Mapping[str, Any]) -> Pattern:
    return Pattern(
        id=item["id"],
        symbol=item["symbol"],
        timeframe=item["timeframe"],
        pattern_type=PatternType(item["patternType"]),
        stage=PatternStage(item["stage"]),
        confidence=float(item["confidence"]),
        quality_score=float(item["qualityScore"]),
        rating=FlagRating(item["rating"]),
        pole_start_time=from_epoch_ms(item["poleStartTime"]),
        pole_end_time=from_epoch_ms(item["poleEndTime"]),
        pole_start_price=float(item["poleStartPrice"]),
        pole_end_price=float(item["poleEndPrice"]),
        pole_length_pct=float(item["poleLengthPct"]),
        flag_high=float(item["flagHigh"]),
        flag_low=float(item["flagLow"]),
        flag_slope=float(item.get("flagSlope", 0.0)),
        flag_start_time=from_epoch_ms(item["flagStartTime"]),
        flag_end_time=ms_or_none(item.get("flagEndTime")),
        breakout_level=float(item["breakoutLevel"]),
        pole_avg_volume=float(item.get("poleAvgVolume", 0.0)),
        flag_avg_volume=float(item.get("flagAvgVolume", 0.0)),
        volume_ratio=float(item.get("volumeRatio", 1.0)),
        confluence_count=int(item.get("confluenceCount", 0)),
        expires_at=from_epoch_ms(item["expiresAt"]),
        detected_at=from_epoch_ms(item["detectedAt"]),
        last_updated=from_epoch_ms(item["lastUpdated"]),
        breakout_time=ms_or_none(item.get("breakoutTime")),
        breakout_price=_float_or_none(item.get("breakoutPrice")),
        breakout_volume=_float_or_none(item.get("breakoutVolume")),
        failure_reason=item.get("failureReason"),
        failure_price=_float_or_none(item.get("failurePrice")),
        signal_id=item.get("signalId"),
        version=int(item.get("version", 0)),
    )


class PatternStore(DynamoTable):
    """Patterns under ``PATTERN#<symbol>#<tf>``; events under ``EVENT#<pattern id>``.

    Events are keyed by type, so each lifecycle step is written at most once
    per pattern no matter how often a batch is replayed.
    """

    store_name = "pattern_store"

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
            env_var="DDB_TABLE_PATTERNS",
        )

    def list_patterns(
        self,
        symbol: str,
        timeframe: str,
        *,
        stages: Iterable[PatternStage] | None = None,
    ) -> list[Pattern]:
        params: dict[str, Any] = {
            "KeyConditionExpression": "PK = :pk",
            "ExpressionAttributeValues": {":pk": serialize(_pattern_pk(symbol, timeframe))},
        }
        wanted = sorted({stage.value for stage in stages}) if stages is not None else None
        if wanted is not None:
            if not wanted:
                return []
            placeholders = []
            for index, value in enumerate(wanted):
                placeholders.append(f":s{index}")
                params["ExpressionAttributeValues"][f":s{index}"] = serialize(value)
            params["FilterExpression"] = f"#stage IN ({', '.join(placeholders)})"
            params["ExpressionAttributeNames"] = {"#stage": "stage"}
        patterns = [pattern_from_item(item) for item in self._query_all(**params)]
        return sorted(patterns, key=lambda p: p.detected_at)

    def get(self, symbol: str, timeframe: str, pattern_id: str) -> Pattern | None:
        response = self._call(
            "get_item",
            Key=self._key(_pattern_pk(symbol, timeframe), f"PATTERN#{pattern_id}"),
            ConsistentRead=True,
        )
        if "Item" not in response:
            return None
        return pattern_from_item(deserialize_item(response["Item"]))

    def insert(self, pattern: Pattern) -> bool:
        try:
            self._call(
                "put_item",
                Item=serialize_item(pattern_to_item(replace(pattern, version=1))),
                ConditionExpression="attribute_not_exists(PK) AND attribute_not_exists(SK)",
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            logger.info("pattern_store.insert.duplicate", extra={"pattern_id": pattern.id})
            return False
        pattern.version = 1
        logger.info(
            "pattern_store.insert.success",
            extra={"pattern_id": pattern.id, "stage": pattern.stage.value},
        )
        return True

    def update(self, pattern: Pattern, prev_version: int) -> Pattern:
        stored = replace(pattern, version=prev_version + 1)
        try:
            self._call(
                "put_item",
                Item=serialize_item(pattern_to_item(stored)),
                ConditionExpression="#version = :prev_version",
                ExpressionAttributeNames={"#version": "version"},
                ExpressionAttributeValues={":prev_version": serialize(prev_version)},
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            logger.warning(
                "pattern_store.update.conflict",
                extra={"pattern_id": pattern.id, "prev_version": prev_version},
            )
            raise VersionConflictError(self.store_name, pattern.id) from exc
        return stored

    def append_event(self, event: PatternEvent) -> bool:
        item = {
            "PK": f"EVENT#{event.pattern_id}",
            "SK": event.event_type.value,
            "patternId": event.pattern_id,
            "eventType": event.event_type.value,
            "occurredAt": event.occurred_at,
            "metrics": dict(event.metrics),
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
        logger.info("pattern_store.event.success", extra={"event": event.key})
        return True

    def list_events(self, pattern_id: str) -> list[PatternEvent]:
        items = self._query_all(
            KeyConditionExpression="PK = :pk",
            ExpressionAttributeValues={":pk": serialize(f"EVENT#{pattern_id}")},
        )
        events = [
            PatternEvent(
                pattern_id=item["patternId"],
                event_type=PatternEventType(item["eventType"]),
                occurred_at=from_epoch_ms(item["occurredAt"]),
                metrics=dict(item.get("metrics", {})),
            )
            for item in items
        ]
        return sorted(events, key=lambda e: (e.occurred_at, _EVENT_ORDER[e.event_type]))
