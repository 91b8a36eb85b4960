"""Tests for TradeDecoder -- schema mapping, normalization and rejection."""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from candles.exceptions import MalformedTradeError
from candles.ingest.decoder import TradeDecoder, parse_timestamp


def _record(**overrides: object) -> dict:
    """Provider-format trade record."""
    record: dict = {
        "ID": 1001,
        "Totaldone": "5",
        "Trx Amount": "2.5",
        "Amount": "100.25",
        "Transtype": "BUY",
        "Accountid": 7,
        "Transtime": "2024-01-01T00:00:10Z",
    }
    record.update(overrides)
    return record


@pytest.fixture
def decoder() -> TradeDecoder:
    return TradeDecoder()


class TestDecodeValid:
    """Tests for successfully decoded records."""

    def test_provider_schema(self, decoder: TradeDecoder) -> None:
        trade = decoder.decode(_record())

        assert trade.id == "1001"
        assert trade.account_id == "7"
        assert trade.amount == Decimal("100.25")
        assert trade.trx_amount == Decimal("2.5")
        assert trade.total_done == Decimal("5")
        assert trade.trans_type == "buy"
        assert trade.event_time == datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc)

    def test_json_string_and_bytes(self, decoder: TradeDecoder) -> None:
        payload = json.dumps(_record())

        from_str = decoder.decode(payload)
        from_bytes = decoder.decode(payload.encode("utf-8"))

        assert from_str == from_bytes
        assert decoder.decoded == 2

    def test_snake_case_keys(self, decoder: TradeDecoder) -> None:
        trade = decoder.decode(
            {
                "id": "abc",
                "trx_amount": 0,
                "amount": 3,
                "account_id": "acc-1",
                "event_time": "2024-01-01T01:00:00+00:00",
            }
        )

        assert trade.id == "abc"
        assert trade.trx_amount == Decimal("0")
        assert trade.trans_type == "unknown"
        assert trade.total_done is None

    def test_float_amount_keeps_printed_value(self, decoder: TradeDecoder) -> None:
        trade = decoder.decode(_record(Amount=0.1))
        assert trade.amount == Decimal("0.1")

    def test_offset_timestamp_normalized_to_utc(self, decoder: TradeDecoder) -> None:
        trade = decoder.decode(_record(Transtime="2024-01-01T02:00:00+02:00"))
        assert trade.event_time == datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
        assert trade.event_time.utcoffset().total_seconds() == 0

    def test_naive_timestamp_assumed_utc(self) -> None:
        parsed = parse_timestamp("2024-01-01T00:30:00")
        assert parsed.tzinfo is not None
        assert parsed == datetime(2024, 1, 1, 0, 30, tzinfo=timezone.utc)


class TestDecodeRejects:
    """Tests for malformed input rejection."""

    def test_invalid_json(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode("{not json")
        assert exc_info.value.reason == "invalid_json"
        assert decoder.rejected == 1

    def test_non_object_payload(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode("[1, 2]")
        assert exc_info.value.reason == "not_an_object"

    @pytest.mark.parametrize("field", ["ID", "Amount", "Trx Amount", "Accountid", "Transtime"])
    def test_missing_required_field(self, decoder: TradeDecoder, field: str) -> None:
        record = _record()
        del record[field]
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(record)
        assert exc_info.value.reason == "missing_field"

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_amount(self, decoder: TradeDecoder, value: str) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Amount=value))
        assert exc_info.value.reason == "non_finite"
        assert exc_info.value.field == "amount"

    def test_zero_amount(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Amount="0"))
        assert exc_info.value.reason == "out_of_range"

    def test_negative_trx_amount(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(**{"Trx Amount": "-1"}))
        assert exc_info.value.reason == "out_of_range"
        assert exc_info.value.field == "trx_amount"

    def test_boolean_is_not_a_number(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Amount=True))
        assert exc_info.value.reason == "invalid_decimal"

    def test_garbage_decimal(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Amount="12abc"))
        assert exc_info.value.reason == "invalid_decimal"

    def test_unparseable_timestamp(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Transtime="yesterday"))
        assert exc_info.value.reason == "invalid_timestamp"

    def test_numeric_timestamp_rejected(self, decoder: TradeDecoder) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Transtime=1704067200))
        assert exc_info.value.reason == "invalid_timestamp"

    @pytest.mark.parametrize(
        "value",
        ["0001-01-01T00:00:00+01:00", "9999-12-31T23:59:59-05:00"],
    )
    def test_timestamp_without_utc_representation(
        self, decoder: TradeDecoder, value: str
    ) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Transtime=value))
        assert exc_info.value.reason == "invalid_timestamp"
        assert exc_info.value.field == "event_time"
        assert decoder.rejected == 1

    @pytest.mark.parametrize(
        "value",
        ["9999-12-31T23:59:59Z", "9000-01-01T00:00:00Z", "0001-01-01T00:00:00Z"],
    )
    def test_event_time_outside_bucket_range(self, decoder: TradeDecoder, value: str) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            decoder.decode(_record(Transtime=value))
        assert exc_info.value.reason == "out_of_range"
        assert exc_info.value.field == "event_time"

    def test_overflowing_query_bound(self) -> None:
        with pytest.raises(MalformedTradeError) as exc_info:
            parse_timestamp("0001-01-01T00:00:00+01:00", "start")
        assert exc_info.value.reason == "invalid_timestamp"
        assert exc_info.value.field == "start"
