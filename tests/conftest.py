import httpx
import pytest

PNG = b"\x89PNG\r\n\x1a\n" + b"fake-chart-bytes"

URL_TEMPLATE = "https://charts.test/{ticker}.png"


def ticker_of(request: httpx.Request) -> str:
    return request.url.path.strip("/").removesuffix(".png")


@pytest.fixture
def upstream():
    """Fake chart provider that counts GETs per ticker."""
    calls: dict[str, int] = {}
    failing: set[str] = set()

    def handler(request: httpx.Request) -> httpx.Response:
        ticker = ticker_of(request)
        calls[ticker] = calls.get(ticker, 0) + 1
        if ticker in failing:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(
            200, headers={"content-type": "image/png"}, content=PNG + ticker.encode()
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client, calls, failing


def staged_files(directory):
    return list(directory.iterdir()) if directory.exists() else []
