import math
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cdc_relay.cdc.normalizer import (
    MAX_SAFE_INTEGER,
    DataNormalizer,
    NormalizationError,
    is_temporal_field,
    looks_like_timestamp,
)
from cdc_relay.model import DatabaseType, RowData


@pytest.fixture
def normalizer() -> DataNormalizer:
    return DataNormalizer()


@pytest.mark.unit
def test_none_row_becomes_empty_row(normalizer):
    row = normalizer.normalize(None)

    assert isinstance(row, RowData)
    assert row.is_empty()


@pytest.mark.unit
def test_temporal_values_become_utc_iso_strings(normalizer):
    plus_two = timezone(timedelta(hours=2))
    row = normalizer.normalize(
        {
            "created_at": datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
            "shipped_at": datetime(2024, 1, 15, 12, 30, tzinfo=plus_two),
            "naive_time": datetime(2024, 1, 15, 10, 30),
            "birth_date": date(2024, 1, 15),
        }
    )

    assert row.get_field("created_at") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("shipped_at") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("naive_time") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("birth_date") == "2024-01-15T00:00:00.000Z"


@pytest.mark.unit
def test_epoch_integers_convert_only_in_temporal_fields(normalizer):
    row = normalizer.normalize(
        {
            "created_at": 1705314600,
            "updated_at": 1705314600000,
            "quantity": 1705314600,
            "modified": 42,
        }
    )

    assert row.get_field("created_at") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("updated_at") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("quantity") == 1705314600
    assert row.get_field("modified") == 42


@pytest.mark.unit
def test_timestamp_strings_are_canonicalised(normalizer):
    row = normalizer.normalize(
        {
            "event_time": "2024-01-15T10:30:00Z",
            "offset_time": "2024-01-15T12:30:00+02:00",
            "name": "T-shirt",
            "note": "hello",
        }
    )

    assert row.get_field("event_time") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("offset_time") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("name") == "T-shirt"
    assert row.get_field("note") == "hello"


@pytest.mark.unit
def test_integers_outside_safe_range_become_strings(normalizer):
    row = normalizer.normalize(
        {
            "safe": MAX_SAFE_INTEGER,
            "big": MAX_SAFE_INTEGER + 1,
            "negative": -(MAX_SAFE_INTEGER + 1),
            "flag": True,
        }
    )

    assert row.get_field("safe") == MAX_SAFE_INTEGER
    assert row.get_field("big") == "9007199254740992"
    assert row.get_field("negative") == "-9007199254740992"
    assert row.get_field("flag") is True


@pytest.mark.unit
def test_special_floats_become_strings(normalizer):
    row = normalizer.normalize(
        {"nan": math.nan, "pos": math.inf, "neg": -math.inf, "price": 9.99}
    )

    assert row.get_field("nan") == "NaN"
    assert row.get_field("pos") == "Infinity"
    assert row.get_field("neg") == "-Infinity"
    assert row.get_field("price") == 9.99


@pytest.mark.unit
def test_decimals_keep_precision(normalizer):
    row = normalizer.normalize(
        {
            "whole": Decimal("42"),
            "price": Decimal("12.50"),
            "exact": Decimal("123456789012345678.123456789"),
            "huge": Decimal("12345678901234567890"),
            "nan": Decimal("NaN"),
        }
    )

    assert row.get_field("whole") == 42
    assert row.get_field("price") == 12.5
    assert row.get_field("exact") == "123456789012345678.123456789"
    assert row.get_field("huge") == "12345678901234567890"
    assert row.get_field("nan") == "NaN"


@pytest.mark.unit
def test_text_and_binary_are_valid_utf8(normalizer):
    row = normalizer.normalize(
        {
            "accented": b"caf\xc3\xa9",
            "broken": b"ok\xff",
            "surrogate": "a\ud800b",
            "plain": "café",
        }
    )

    assert row.get_field("accented") == "café"
    assert row.get_field("broken") == "ok�"
    assert row.get_field("surrogate") == "a�b"
    assert row.get_field("plain") == "café"
    for name in row:
        row.get_field(name).encode("utf-8")


@pytest.mark.unit
def test_nested_structures_are_normalised_recursively(normalizer):
    row = normalizer.normalize(
        {
            "tags": ["a", MAX_SAFE_INTEGER + 1, None],
            "meta": {"created_at": 1705314600, "count": Decimal("3")},
            "pair": (1, 2),
        }
    )

    assert row.get_field("tags") == ["a", "9007199254740992", None]
    assert row.get_field("meta") == {"created_at": "2024-01-15T10:30:00.000Z", "count": 3}
    assert row.get_field("pair") == [1, 2]


@pytest.mark.unit
def test_unknown_types_fall_back_to_text(normalizer):
    value = uuid.UUID("12345678-1234-5678-1234-567812345678")

    row = normalizer.normalize({"id": value, 7: "numeric key"}, DatabaseType.MYSQL)

    assert row.get_field("id") == "12345678-1234-5678-1234-567812345678"
    assert row.get_field("7") == "numeric key"


@pytest.mark.unit
def test_failures_are_wrapped_in_normalization_error(normalizer):
    class Unprintable:
        def __str__(self):
            raise RuntimeError("boom")

    with pytest.raises(NormalizationError) as excinfo:
        normalizer.normalize({"blob": Unprintable()})

    assert isinstance(excinfo.value.__cause__, RuntimeError)


@pytest.mark.unit
@pytest.mark.parametrize(
    "name, expected",
    [
        ("created_at", True),
        ("published_on", True),
        ("Timestamp", True),
        ("birth_date", True),
        ("eventTime", True),
        ("createdAt", True),
        ("updated", True),
        ("amount", False),
        ("candidate_id", False),
        ("update_count", False),
        ("lifetime_points", False),
        ("on", False),
        ("", False),
        (None, False),
    ],
)
def test_is_temporal_field(name, expected):
    assert is_temporal_field(name) is expected


@pytest.mark.unit
def test_digit_strings_convert_only_in_temporal_fields(normalizer):
    row = normalizer.normalize(
        {
            "phone": "5551234567",
            "account_no": "1234567890123",
            "created_at": "1705314600",
            "updated_at": "1705314600123",
        }
    )

    assert row.get_field("phone") == "5551234567"
    assert row.get_field("account_no") == "1234567890123"
    assert row.get_field("created_at") == "2024-01-15T10:30:00.000Z"
    assert row.get_field("updated_at") == "2024-01-15T10:30:00.123Z"


@pytest.mark.unit
def test_name_fragments_do_not_make_a_field_temporal(normalizer):
    row = normalizer.normalize({"candidate_id": 1700000000, "lifetime_points": 1234567890})

    assert row.get_field("candidate_id") == 1700000000
    assert row.get_field("lifetime_points") == 1234567890


@pytest.mark.unit
def test_looks_like_timestamp():
    assert looks_like_timestamp("2024-01-15 10:30:00")
    assert looks_like_timestamp("2024-01-15T10:30:00Z")
    assert not looks_like_timestamp("1705314600")
    assert not looks_like_timestamp("hello")
    assert not looks_like_timestamp("12345")
