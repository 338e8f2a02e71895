"""DynamoDB plumbing shared by the stores, plus the execution state store."""

from __future__ import annotations

import logging
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from common.utils import from_epoch_ms, to_epoch_ms
from core.domain.models.ExecutionState import DAILY_COUNTERS, ExecutionState
from core.errors import PersistenceError


logger = logging.getLogger("flagbot.dynamo_store")

_DEFAULT_REGION = os.getenv("DDB_REGION")

_SERIALIZER = TypeSerializer()
_DESERIALIZER = TypeDeserializer()

CONDITIONAL_FAILURE = "ConditionalCheckFailedException"


def _normalize_number(value: int | float | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Boolean values are not supported as numeric fields")
    return Decimal(str(value))


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return _normalize_number(value)
    if isinstance(value, datetime):
        return Decimal(to_epoch_ms(value))
    return value


def _pythonify(value: Any) -> Any:
    if isinstance(value, list):
        return [_pythonify(v) for v in value]
    if isinstance(value, dict):
        return {k: _pythonify(v) for k, v in value.items()}
    if isinstance(value, set):
        return {_pythonify(v) for v in value}
    if isinstance(value, Decimal):
        if value % 1 == 0:
            return int(value)
        return float(value)
    return value


def serialize(value: Any) -> dict[str, Any]:
    return _SERIALIZER.serialize(_normalize_value(value))


def serialize_item(item: Mapping[str, Any]) -> dict[str, Any]:
    """Serialize ``item`` for the low-level client, dropping ``None`` attributes."""
    return {k: serialize(v) for k, v in item.items() if v is not None}


def deserialize_item(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _pythonify(_DESERIALIZER.deserialize(v)) for k, v in raw.items()}


def ms_or_none(value: Any) -> datetime | None:
    if value is None:
        return None
    return from_epoch_ms(value)


def is_conditional_failure(exc: BaseException) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == CONDITIONAL_FAILURE


class DynamoTable:
    """Thin wrapper over a boto3 DynamoDB client bound to one table.

    Non-conditional client errors are retried once before surfacing as
    :class:`PersistenceError`; conditional check failures are re-raised
    unchanged so callers can map them to their own outcome.
    """

    store_name = "dynamo"

    def __init__(
        self,
        table_name: str | None = None,
        *,
        dynamo_client: Any | None = None,
        region_name: str | None = None,
        env_var: str = "",
    ) -> None:
        self._table_name = table_name or (os.getenv(env_var, "") if env_var else "")
        if not self._table_name:
            raise ValueError(
                f"{self.store_name} table name must be provided via argument or {env_var or 'constructor'}"
            )
        self._client = dynamo_client or boto3.client(
            "dynamodb", region_name=region_name or _DEFAULT_REGION
        )

    @property
    def table_name(self) -> str:
        return self._table_name

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        method: Callable[..., dict[str, Any]] = getattr(self._client, operation)
        for attempt in range(2):
            try:
                return method(TableName=self._table_name, **kwargs)
            except ClientError as exc:
                if is_conditional_failure(exc):
                    raise
                if attempt:
                    logger.warning(
                        f"{self.store_name}.{operation}.failure",
                        extra={"table": self._table_name, "error": str(exc)},
                    )
                    raise PersistenceError(self.store_name, operation, exc) from exc
            except BotoCoreError as exc:
                if attempt:
                    logger.warning(
                        f"{self.store_name}.{operation}.failure",
                        extra={"table": self._table_name, "error": str(exc)},
                    )
                    raise PersistenceError(self.store_name, operation, exc) from exc
            logger.info(f"{self.store_name}.{operation}.retry", extra={"table": self._table_name})
        raise AssertionError("unreachable")  # pragma: no cover

    def _query_all(self, **kwargs: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        start_key: dict[str, Any] | None = None
        while True:
            params = dict(kwargs)
            if start_key:
                params["ExclusiveStartKey"] = start_key
            response = self._call("query", **params)
            items.extend(deserialize_item(raw) for raw in response.get("Items", []))
            start_key = response.get("LastEvaluatedKey")
            if not start_key:
                return items

    @staticmethod
    def _key(pk: str, sk: str) -> dict[str, Any]:
        return {"PK": serialize(pk), "SK": serialize(sk)}


_COUNTER_ATTRS = {
    "patterns_detected_today": "patternsDetectedToday",
    "signals_generated_today": "signalsGeneratedToday",
    "trades_executed_today": "tradesExecutedToday",
    "bars_analyzed": "barsAnalyzed",
}


def _state_pk(symbol: str, timeframe: str) -> str:
    return f"STATE#{symbol}#{timeframe}"


def _state_from_item(item: Mapping[str, Any], symbol: str, timeframe: str) -> ExecutionState:
    return ExecutionState(
        symbol=item.get("symbol", symbol),
        timeframe=item.get("timeframe", timeframe),
        last_bar_processed=ms_or_none(item.get("lastBarProcessed")),
        last_execution_time=ms_or_none(item.get("lastExecutionTime")),
        last_daily_reset=item.get("lastDailyReset"),
        lock_owner=item.get("lockOwner"),
        lock_expires_at=ms_or_none(item.get("lockExpiresAt")),
        version=int(item.get("version", 0)),
        created_at=ms_or_none(item.get("createdAt")),
        **{name: int(item.get(attr, 0)) for name, attr in _COUNTER_ATTRS.items()},
    )


class ExecutionStateStore(DynamoTable):
    """Cursor, daily counters and advisory lock per symbol+timeframe.

    Example usage::

        store = ExecutionStateStore()
        state = store.get("BTCUSDT", "5m")
        if store.acquire_lock("BTCUSDT", "5m", run_id, now, ttl_seconds=240):
            store.advance_cursor("BTCUSDT", "5m", last_bar_ts, {"bars_analyzed": 3})
            store.release_lock("BTCUSDT", "5m", run_id)
    """

    store_name = "execution_state"

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
            env_var="DDB_TABLE_EXECUTION_STATE",
        )

    def get(self, symbol: str, timeframe: str) -> ExecutionState:
        key = self._key(_state_pk(symbol, timeframe), "STATE")
        response = self._call("get_item", Key=key, ConsistentRead=True)
        if "Item" in response:
            return _state_from_item(deserialize_item(response["Item"]), symbol, timeframe)

        now = datetime.now(timezone.utc)
        item = {
            "PK": _state_pk(symbol, timeframe),
            "SK": "STATE",
            "symbol": symbol,
            "timeframe": timeframe,
            "version": 0,
            "createdAt": now,
            **{attr: 0 for attr in _COUNTER_ATTRS.values()},
        }
        try:
            self._call(
                "put_item",
                Item=serialize_item(item),
                ConditionExpression="attribute_not_exists(PK)",
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            # Another invocation created the row first.
            response = self._call("get_item", Key=key, ConsistentRead=True)
            if "Item" in response:
                return _state_from_item(deserialize_item(response["Item"]), symbol, timeframe)
            return _state_from_item(item_to_python(item), symbol, timeframe)
        logger.info("execution_state.create.success", extra={"symbol": symbol, "timeframe": timeframe})
        return _state_from_item(item_to_python(item), symbol, timeframe)

    def advance_cursor(
        self,
        symbol: str,
        timeframe: str,
        new_timestamp: datetime,
        counters: Mapping[str, int] | None = None,
    ) -> bool:
        """Move the cursor to ``new_timestamp`` only if it is newer.

        ``counters`` are added in the same conditional write, so a replay of
        an already-advanced batch adds nothing.
        """

        expr_names = {
            "#cursor": "lastBarProcessed",
            "#version": "version",
            "#symbol": "symbol",
            "#timeframe": "timeframe",
        }
        expr_values: dict[str, Any] = {
            ":ts": serialize(to_epoch_ms(new_timestamp)),
            ":zero": serialize(0),
            ":one": serialize(1),
            ":symbol": serialize(symbol),
            ":timeframe": serialize(timeframe),
        }
        set_parts = [
            "#cursor = :ts",
            "#version = if_not_exists(#version, :zero) + :one",
            "#symbol = if_not_exists(#symbol, :symbol)",
            "#timeframe = if_not_exists(#timeframe, :timeframe)",
        ]
        add_parts = self._counter_parts(counters or {}, expr_names, expr_values)
        update_expression = "SET " + ", ".join(set_parts)
        if add_parts:
            update_expression += " ADD " + ", ".join(add_parts)
        try:
            self._call(
                "update_item",
                Key=self._key(_state_pk(symbol, timeframe), "STATE"),
                UpdateExpression=update_expression,
                ConditionExpression="attribute_not_exists(#cursor) OR #cursor < :ts",
                ExpressionAttributeNames=expr_names,
                ExpressionAttributeValues=expr_values,
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            logger.info(
                "execution_state.advance_cursor.ignored",
                extra={"symbol": symbol, "timeframe": timeframe, "cursor": new_timestamp.isoformat()},
            )
            return False
        logger.info(
            "execution_state.advance_cursor.success",
            extra={"symbol": symbol, "timeframe": timeframe, "cursor": new_timestamp.isoformat()},
        )
        return True

    def increment_daily_counters(
        self, symbol: str, timeframe: str, counters: Mapping[str, int]
    ) -> None:
        expr_names: dict[str, str] = {}
        expr_values: dict[str, Any] = {}
        add_parts = self._counter_parts(counters, expr_names, expr_values)
        if not add_parts:
            return
        self._call(
            "update_item",
            Key=self._key(_state_pk(symbol, timeframe), "STATE"),
            UpdateExpression="ADD " + ", ".join(add_parts),
            ExpressionAttributeNames=expr_names,
            ExpressionAttributeValues=expr_values,
        )

    def reset_if_new_day(self, symbol: str, timeframe: str, today: date) -> bool:
        expr_names = {"#reset": "lastDailyReset"}
        expr_values: dict[str, Any] = {":today": serialize(today.isoformat()), ":zero": serialize(0)}
        set_parts = ["#reset = :today"]
        for name, attr in _COUNTER_ATTRS.items():
            expr_names[f"#c_{name}"] = attr
            set_parts.append(f"#c_{name} = :zero")
        try:
            self._call(
                "update_item",
                Key=self._key(_state_pk(symbol, timeframe), "STATE"),
                UpdateExpression="SET " + ", ".join(set_parts),
                ConditionExpression="attribute_not_exists(#reset) OR #reset <> :today",
                ExpressionAttributeNames=expr_names,
                ExpressionAttributeValues=expr_values,
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            return False
        logger.info(
            "execution_state.daily_reset.success",
            extra={"symbol": symbol, "timeframe": timeframe, "date": today.isoformat()},
        )
        return True

    def acquire_lock(
        self, symbol: str, timeframe: str, owner: str, now: datetime, ttl_seconds: int
    ) -> bool:
        expires = now + timedelta(seconds=ttl_seconds)
        try:
            self._call(
                "update_item",
                Key=self._key(_state_pk(symbol, timeframe), "STATE"),
                UpdateExpression="SET #owner = :owner, #expires = :expires, #last = :now",
                ConditionExpression=(
                    "attribute_not_exists(#owner) OR #expires < :now OR #owner = :owner"
                ),
                ExpressionAttributeNames={
                    "#owner": "lockOwner",
                    "#expires": "lockExpiresAt",
                    "#last": "lastExecutionTime",
                },
                ExpressionAttributeValues={
                    ":owner": serialize(owner),
                    ":expires": serialize(to_epoch_ms(expires)),
                    ":now": serialize(to_epoch_ms(now)),
                },
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            logger.info("execution_state.lock.busy", extra={"symbol": symbol, "timeframe": timeframe})
            return False
        return True

    def release_lock(self, symbol: str, timeframe: str, owner: str) -> None:
        try:
            self._call(
                "update_item",
                Key=self._key(_state_pk(symbol, timeframe), "STATE"),
                UpdateExpression="REMOVE #owner, #expires",
                ConditionExpression="#owner = :owner",
                ExpressionAttributeNames={"#owner": "lockOwner", "#expires": "lockExpiresAt"},
                ExpressionAttributeValues={":owner": serialize(owner)},
            )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            logger.warning(
                "execution_state.lock.release_lost",
                extra={"symbol": symbol, "timeframe": timeframe, "owner": owner},
            )

    def health(
        self, symbol: str, timeframe: str, now: datetime, max_idle_minutes: int = 60
    ) -> dict[str, Any]:
        return state_health(self.get(symbol, timeframe), now, max_idle_minutes)

    @staticmethod
    def _counter_parts(
        counters: Mapping[str, int],
        expr_names: dict[str, str],
        expr_values: dict[str, Any],
    ) -> list[str]:
        parts: list[str] = []
        for name, amount in counters.items():
            if name not in _COUNTER_ATTRS:
                raise ValueError(f"Unknown counter {name!r}; expected one of {DAILY_COUNTERS}")
            if not amount:
                continue
            expr_names[f"#c_{name}"] = _COUNTER_ATTRS[name]
            expr_values[f":c_{name}"] = serialize(int(amount))
            parts.append(f"#c_{name} :c_{name}")
        return parts


def state_health(state: ExecutionState, now: datetime, max_idle_minutes: int) -> dict[str, Any]:
    """Healthy when the pair executed within ``max_idle_minutes``."""

    last = state.last_execution_time
    idle_minutes = (now - last).total_seconds() / 60 if last else None
    return {
        "symbol": state.symbol,
        "timeframe": state.timeframe,
        "healthy": idle_minutes is not None and idle_minutes <= max_idle_minutes,
        "idle_minutes": idle_minutes,
        "last_bar_processed": state.last_bar_processed.isoformat() if state.last_bar_processed else None,
        "counters": state.counters(),
    }


def item_to_python(item: Mapping[str, Any]) -> dict[str, Any]:
    return {k: _pythonify(_normalize_value(v)) for k, v in item.items()}
