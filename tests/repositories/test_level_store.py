from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from core.domain.models.Level import Level, LevelStrength, LevelType
from core.domain.models.Touch import Touch, TouchType
from core.errors import VersionConflictError
from repositories.dynamo_store import item_to_python, serialize_item
from repositories.level_store import LevelStore, TouchStore, level_from_item, level_to_item

DETECTED = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _conditional_failure() -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "failed"}}, "PutItem"
    )


def _level(level_id: str = "lvl-1", price: float = 106.0, confidence: float = 0.7, **kwargs) -> Level:
    return Level(
        id=level_id,
        symbol="BTCUSDT",
        timeframe="5m",
        level_type=kwargs.pop("level_type", LevelType.RESISTANCE),
        price=price,
        strength=LevelStrength.MEDIUM,
        confidence=confidence,
        first_detected=DETECTED,
        last_confirmed=DETECTED,
        **kwargs,
    )


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def store(client: MagicMock) -> LevelStore:
    return LevelStore(dynamo_client=client)


def test_item_conversion_keeps_optional_fields() -> None:
    level = _level(
        price_min=105.5, price_max=106.5, sources=["pivot", "volume"], last_touch_at=DETECTED, version=4
    )
    item = level_to_item(level)

    assert item["PK"] == "LEVEL#BTCUSDT#5m"
    assert item["SK"] == "LEVEL#lvl-1"
    restored = level_from_item(item_to_python(item))
    assert restored == level


def test_insert_sets_version_one(store: LevelStore, client: MagicMock) -> None:
    level = _level()

    assert store.insert(level) is True

    call = client.put_item.call_args.kwargs
    assert call["TableName"] == "flag_levels"
    assert call["ConditionExpression"] == "attribute_not_exists(PK) AND attribute_not_exists(SK)"
    assert call["Item"]["version"]["N"] == "1"
    assert "invalidatedAt" not in call["Item"]
    assert level.version == 1


def test_insert_duplicate_returns_false(store: LevelStore, client: MagicMock) -> None:
    client.put_item.side_effect = _conditional_failure()
    level = _level()

    assert store.insert(level) is False
    assert level.version == 0
    assert client.put_item.call_count == 1


def test_update_checks_previous_version(store: LevelStore, client: MagicMock) -> None:
    stored = store.update(_level(touch_count=3, version=2), prev_version=2)

    call = client.put_item.call_args.kwargs
    assert call["ConditionExpression"] == "#version = :prev_version"
    assert call["ExpressionAttributeValues"][":prev_version"]["N"] == "2"
    assert call["Item"]["version"]["N"] == "3"
    assert stored.version == 3
    assert stored.touch_count == 3


def test_update_conflict_raises(store: LevelStore, client: MagicMock) -> None:
    client.put_item.side_effect = _conditional_failure()

    with pytest.raises(VersionConflictError) as exc_info:
        store.update(_level(version=2), prev_version=2)
    assert exc_info.value.key == "lvl-1"


def test_list_levels_paginates_and_sorts(store: LevelStore, client: MagicMock) -> None:
    weak = serialize_item(level_to_item(_level("a", price=104.0, confidence=0.5)))
    strong = serialize_item(level_to_item(_level("b", price=106.0, confidence=0.9)))
    tie = serialize_item(level_to_item(_level("c", price=103.0, confidence=0.9)))
    client.query.side_effect = [
        {"Items": [weak], "LastEvaluatedKey": {"PK": {"S": "x"}}},
        {"Items": [strong, tie]},
    ]

    levels = store.list_levels("BTCUSDT", "5m", min_confidence=0.4)

    assert [level.id for level in levels] == ["c", "b", "a"]
    first, second = client.query.call_args_list
    assert "ExclusiveStartKey" not in first.kwargs
    assert second.kwargs["ExclusiveStartKey"] == {"PK": {"S": "x"}}
    assert first.kwargs["FilterExpression"] == "#active = :true AND #confidence >= :min_conf"


def test_find_similar_returns_closest(store: LevelStore, client: MagicMock) -> None:
    client.query.return_value = {
        "Items": [
            serialize_item(level_to_item(_level("far", price=106.4))),
            serialize_item(level_to_item(_level("near", price=106.05))),
        ]
    }

    found = store.find_similar("BTCUSDT", "5m", LevelType.RESISTANCE, 106.0, 0.005)

    assert found is not None and found.id == "near"
    values = client.query.call_args.kwargs["ExpressionAttributeValues"]
    assert values[":type"]["S"] == "resistance"


def test_find_similar_none_when_empty(store: LevelStore, client: MagicMock) -> None:
    client.query.return_value = {"Items": []}
    assert store.find_similar("BTCUSDT", "5m", LevelType.SUPPORT, 100.0, 0.005) is None


def test_touch_append_is_idempotent_per_bar(client: MagicMock) -> None:
    touches = TouchStore(dynamo_client=client)
    touch = Touch(
        level_id="lvl-1",
        bar_timestamp=DETECTED,
        touch_price=106.0,
        touch_type=TouchType.BOUNCE,
        held=True,
    )

    assert touches.append(touch) is True
    item = client.put_item.call_args.kwargs["Item"]
    assert item["PK"]["S"] == "TOUCH#lvl-1"
    assert item["SK"]["S"] == f"BAR#{int(DETECTED.timestamp() * 1000):013d}"

    client.put_item.side_effect = _conditional_failure()
    assert touches.append(touch) is False
