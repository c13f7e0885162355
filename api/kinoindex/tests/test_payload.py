from __future__ import annotations

from datetime import datetime, timezone

from kinoindex.models.catalog import VideoKind
from kinoindex.upstream.payload import (
    find_first_leaf,
    is_http_url,
    normalize_player_link,
    parse_int,
    parse_kind,
    parse_rating,
    parse_year,
    split_list,
)
from kinoindex.utils.datetime import parse_timestamp


def test_scalar_coercion_handles_loose_values() -> None:
    assert parse_int("42 min") == 42
    assert parse_int(True) is None
    assert parse_int(float("nan")) is None
    assert parse_year("2019-2021") == 2019
    assert parse_year(1700) is None
    assert parse_rating("7,45") == 7.45
    assert parse_rating(0) is None
    assert parse_rating("11") is None
    assert parse_kind("tv-series") is VideoKind.SERIAL
    assert parse_kind(None) is VideoKind.MOVIE


def test_split_list_accepts_csv_lists_and_named_objects() -> None:
    assert split_list("драма, комедия ,") == frozenset({"драма", "комедия"})
    assert split_list([{"name": "США"}, {"title": "Франция"}, None, ""]) == frozenset({"США", "Франция"})
    assert split_list(None) == frozenset()


def test_parse_timestamp_normalises_to_utc() -> None:
    assert parse_timestamp("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-02 03:04:05") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_timestamp("yesterday") is None


def test_find_first_leaf_is_breadth_first_and_depth_bounded() -> None:
    tree = {
        "meta": {"deep": {"deeper": {"iframe": "https://deep.example"}}},
        "player": {"iframe": "https://shallow.example"},
    }

    assert find_first_leaf(tree, is_http_url, keys=("iframe",)) == "https://shallow.example"
    assert find_first_leaf({"a": {"b": {"iframe": "https://x.example"}}}, is_http_url, keys=("iframe",), max_depth=1) is None
    assert find_first_leaf(["nope", {"url": "//cdn.example/v"}], is_http_url) == "//cdn.example/v"


def test_normalize_player_link_forces_https() -> None:
    assert normalize_player_link("//kodik.example/v/1") == "https://kodik.example/v/1"
    assert normalize_player_link("http://kodik.example/v/1") == "https://kodik.example/v/1"
