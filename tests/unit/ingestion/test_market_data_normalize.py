import pytest

from ingestion.market_data.normalize import MarketDataNormalizer
from term_engine.exceptions.core import MalformedEventError


def _norm():
    return MarketDataNormalizer(source_id="test-feed", clock=lambda: 123)


def test_nested_fields_payload():
    upd = _norm().normalize(
        {"instrument": "USD-SWAP", "seq": 42, "source_ts": 1_700_000_000_000, "fields": {"rate": 5.01}}
    )
    assert upd.instrument == "USD-SWAP"
    assert upd.seq == 42
    assert upd.source_ts == 1_700_000_000_000
    assert dict(upd.fields) == {"rate": 5.01}
    assert upd.received_ts == 123
    assert upd.source_id == "test-feed"


def test_flat_payload_with_aliases_and_seconds_timestamp():
    upd = _norm().normalize(
        {"symbol": "EUR-SWAP", "sequence": "7", "ts": 1_700_000_000, "rate": 3.2, "spread": 0.1, "desk": "RATES"}
    )
    assert upd.instrument == "EUR-SWAP"
    assert upd.seq == 7
    assert upd.source_ts == 1_700_000_000_000
    assert dict(upd.fields) == {"rate": 3.2, "spread": 0.1}
    assert upd.desk == "RATES"
    assert upd.scope_keys() == ("instrument:EUR-SWAP", "desk:RATES")


def test_fields_are_read_only():
    upd = _norm().normalize({"instrument": "X", "seq": 1, "ts": 1, "rate": 1})
    with pytest.raises(TypeError):
        upd.fields["rate"] = 2


@pytest.mark.parametrize(
    "raw, field",
    [
        ({"seq": 1, "ts": 1, "rate": 1}, "instrument"),
        ({"instrument": "  ", "seq": 1, "ts": 1}, "instrument"),
        ({"instrument": "X", "ts": 1}, "seq"),
        ({"instrument": "X", "seq": 1.5, "ts": 1}, "seq"),
        ({"instrument": "X", "seq": True, "ts": 1}, "seq"),
        ({"instrument": "X", "seq": 1}, "source_ts"),
        ({"instrument": "X", "seq": 1, "ts": "yesterday"}, "source_ts"),
        ({"instrument": "X", "seq": 1, "ts": 1, "fields": [1, 2]}, "fields"),
    ],
)
def test_malformed_payloads_name_the_bad_field(raw, field):
    with pytest.raises(MalformedEventError) as ei:
        _norm().normalize(raw)
    assert ei.value.field == field


def test_non_mapping_payload_is_malformed():
    with pytest.raises(MalformedEventError):
        _norm().normalize(b"not json")


def test_unparseable_received_ts_falls_back_to_clock():
    upd = _norm().normalize({"instrument": "X", "seq": 1, "ts": 1, "received_ts": "soon"})
    assert upd.received_ts == 123
