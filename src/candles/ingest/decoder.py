"""Trade decoder -- validates raw trade records into canonical Trade entities.

Accepts the provider's JSON schema (ID, Totaldone, Trx Amount, Amount,
Transtype, Accountid, Transtime). Keys are matched case-insensitively with
spaces and underscores ignored, so snake_case payloads decode as well.

Numeric fields are parsed via Decimal(str(value)) so that JSON floats keep
their printed representation. Booleans are never accepted as numbers.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from candles.exceptions import MalformedTradeError
from candles.models import MAX_EVENT_TIME, MIN_EVENT_TIME, Trade

# Canonical field -> accepted normalized key spellings
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "tradeid"),
    "total_done": ("totaldone",),
    "trx_amount": ("trxamount",),
    "amount": ("amount",),
    "trans_type": ("transtype",),
    "account_id": ("accountid",),
    "event_time": ("transtime", "eventtime", "timestamp"),
}


def _normalize_key(key: str) -> str:
    return key.replace(" ", "").replace("_", "").lower()


def _pick(record: dict[str, Any], field: str) -> Any:
    for alias in _FIELD_ALIASES[field]:
        if alias in record:
            return record[alias]
    return None


def _parse_decimal(value: Any, field: str) -> Decimal:
    if value is None or value == "":
        raise MalformedTradeError("missing_field", field)
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise MalformedTradeError("invalid_decimal", field, repr(value))
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        raise MalformedTradeError("invalid_decimal", field, repr(value)) from None
    if not result.is_finite():
        raise MalformedTradeError("non_finite", field, str(result))
    return result


def _parse_identifier(value: Any, field: str) -> str:
    if value is None or isinstance(value, bool):
        raise MalformedTradeError("missing_field", field)
    if isinstance(value, float):
        if not value.is_integer():
            raise MalformedTradeError("invalid_identifier", field, repr(value))
        value = int(value)
    if not isinstance(value, (int, str)):
        raise MalformedTradeError("invalid_identifier", field, repr(value))
    text = str(value).strip()
    if not text:
        raise MalformedTradeError("missing_field", field)
    return text


def parse_timestamp(value: Any, field: str = "event_time") -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    A trailing "Z" is accepted; naive values are taken to be UTC.
    """
    if value is None or value == "":
        raise MalformedTradeError("missing_field", field)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise MalformedTradeError("invalid_timestamp", field, value) from None
    else:
        raise MalformedTradeError("invalid_timestamp", field, repr(value))

    try:
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # e.g. 0001-01-01T00:00:00+01:00 has no UTC representation
        raise MalformedTradeError("invalid_timestamp", field, str(value)) from None


class TradeDecoder:
    """Decodes raw trade payloads (bytes, str or dict) into Trade objects.

    Raises MalformedTradeError for anything that cannot enter aggregation.
    Keeps simple accept/reject counters for the shard's stats.
    """

    def __init__(self) -> None:
        self.decoded = 0
        self.rejected = 0

    def decode(self, raw: bytes | str | dict[str, Any]) -> Trade:
        try:
            trade = self._decode(raw)
        except MalformedTradeError:
            self.rejected += 1
            raise
        self.decoded += 1
        return trade

    def _decode(self, raw: bytes | str | dict[str, Any]) -> Trade:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                raise MalformedTradeError("invalid_encoding") from None
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise MalformedTradeError("invalid_json", detail=str(e)) from None
        if not isinstance(raw, dict):
            raise MalformedTradeError("not_an_object", detail=type(raw).__name__)

        record = {_normalize_key(str(k)): v for k, v in raw.items()}

        amount = _parse_decimal(_pick(record, "amount"), "amount")
        if amount <= 0:
            raise MalformedTradeError("out_of_range", "amount", str(amount))

        trx_amount = _parse_decimal(_pick(record, "trx_amount"), "trx_amount")
        if trx_amount < 0:
            raise MalformedTradeError("out_of_range", "trx_amount", str(trx_amount))

        event_time = parse_timestamp(_pick(record, "event_time"))
        if not MIN_EVENT_TIME <= event_time < MAX_EVENT_TIME:
            raise MalformedTradeError("out_of_range", "event_time", event_time.isoformat())

        raw_total = _pick(record, "total_done")
        total_done = None if raw_total in (None, "") else _parse_decimal(raw_total, "total_done")

        raw_type = _pick(record, "trans_type")
        trans_type = "unknown" if raw_type in (None, "") else str(raw_type).strip().lower()

        return Trade(
            id=_parse_identifier(_pick(record, "id"), "id"),
            account_id=_parse_identifier(_pick(record, "account_id"), "account_id"),
            amount=amount,
            trx_amount=trx_amount,
            event_time=event_time,
            trans_type=trans_type,
            total_done=total_done,
        )
