import pytest

from chart_cache.errors import InvalidSymbolFormat
from chart_cache.services.identity import derive_key, is_storage_key, key_to_ticker, resolve


def test_resolve_uppercases():
    assert resolve("aapl") == "AAPL"
    assert resolve("Msft") == "MSFT"
    assert resolve("BRK1") == "BRK1"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   ",
        "  Msft ",
        "AAPL\n",
        "\tAAPL",
        "BAD$",
        "BRK.B",
        "BF-B",
        "ÄPPL",
        "A B",
        "ABCDEFGHIJK",
        "ß",
        "ſ",
        "ﬁ",
        "Aſ",
    ],
)
def test_resolve_rejects_bad_symbols(raw):
    with pytest.raises(InvalidSymbolFormat):
        resolve(raw)


@pytest.mark.parametrize("raw", [None, 42, ["AAPL"]])
def test_resolve_rejects_non_strings(raw):
    with pytest.raises(InvalidSymbolFormat):
        resolve(raw)


def test_resolve_accepts_ten_characters():
    assert resolve("abcdefghij") == "ABCDEFGHIJ"


@pytest.mark.parametrize("ticker", ["A", "AAPL", "X1", "ABCDEFGHIJ", "123"])
def test_key_round_trip(ticker):
    assert derive_key(ticker) == f"{ticker}_chart.png"
    assert key_to_ticker(derive_key(ticker)) == ticker


@pytest.mark.parametrize(
    "key",
    [
        "notes.txt",
        "AAPL.png",
        "aapl_chart.png",
        "AAPL_chart.png.bak",
        "_chart.png",
        "../AAPL_chart.png",
        "AAPL_chart.png\n",
        " AAPL_chart.png",
    ],
)
def test_key_to_ticker_rejects_other_names(key):
    with pytest.raises(InvalidSymbolFormat):
        key_to_ticker(key)
    assert is_storage_key(key) is False
