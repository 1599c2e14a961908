import pytest
import requests

from ingest.core.config import ScraperConfig
from ingest.core.errors import StructuralError
from ingest.core.models import SourceId
from ingest.sources import base, hfsaa, ifanca

CHICAGO_URL = "https://www.hfsaa.org/chicago"

CHICAGO_TABLE = """
<html><body>
<table>
  <tr><th>Name</th><th>Address</th><th>Phone</th></tr>
  <tr><td>Al-Noor Grill</td><td>2800 W Devon Ave, Chicago, IL 60659</td><td>(773) 555-0100</td></tr>
  <tr><td>Sabri Nihari</td><td>2502 W Devon Ave, Chicago, IL 60659</td><td>N/A</td></tr>
  <tr><td>Ghareeb Nawaz</td><td>2032 W Devon Ave, Chicago, IL 60659</td><td></td></tr>
  <tr><td>View menu</td><td>click here</td></tr>
</table>
</body></html>
"""

CHICAGO_CARDS = """
<html><body>
<div class="business-card">
  <h3>Kabul House</h3>
  <p class="address">4949 Oakton St, Skokie, IL 60077</p>
  <a class="phone" href="tel:8475550101">847-555-0101</a>
  <a href="https://kabulhouse.com">Website</a>
</div>
</body></html>
"""

IFANCA_TABLE = """
<html><body><table><tbody>
  <tr><td>Midamar Corporation</td><td>United States</td><td>Meat, Poultry</td></tr>
  <tr><td>Saffron Road</td><td>USA</td><td>Frozen Entrees</td></tr>
  <tr><td>Al Islami Foods</td><td>United Arab Emirates</td><td>Meat</td></tr>
</tbody></table></body></html>
"""


class DummyResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class DummySession:
    """Serves queued responses (or raises queued exceptions) per URL."""

    def __init__(self, routes):
        self.routes = {url: list(responses) for url, responses in routes.items()}
        self.headers = {}
        self.calls = []

    def get(self, url, timeout=None, allow_redirects=True):
        self.calls.append(url)
        queue = self.routes.get(url)
        if not queue:
            return DummyResponse(404)
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_config(**overrides):
    values = {"rate_limit_seconds": 0, "respect_robots_txt": False, "region": "Chicago"}
    values.update(overrides)
    return ScraperConfig(**values)


def make_adapter(adapter_class, routes):
    adapter = adapter_class(session=DummySession(routes))
    adapter.retry_base_delay = 0
    return adapter


async def collect(adapter, config):
    return [candidate async for candidate in adapter.scrape(config)]


@pytest.mark.asyncio
async def test_hfsaa_parses_table_rows():
    adapter = make_adapter(hfsaa.HfsaaSource, {CHICAGO_URL: [DummyResponse(text=CHICAGO_TABLE)]})

    candidates = await collect(adapter, make_config())

    assert [c.name for c in candidates] == ["Al-Noor Grill", "Sabri Nihari", "Ghareeb Nawaz"]
    first = candidates[0]
    assert first.source is SourceId.HFSAA
    assert first.source_url == CHICAGO_URL
    assert first.address == "2800 W Devon Ave, Chicago, IL 60659"
    assert first.phone == "(773) 555-0100"
    assert first.state == "IL"
    assert first.certifier == "HFSAA"
    assert candidates[1].phone is None
    assert adapter.errors == []
    assert adapter.session.headers["User-Agent"]


@pytest.mark.asyncio
async def test_hfsaa_card_layout():
    adapter = make_adapter(hfsaa.HfsaaSource, {CHICAGO_URL: [DummyResponse(text=CHICAGO_CARDS)]})

    candidates = await collect(adapter, make_config())

    assert len(candidates) == 1
    assert candidates[0].name == "Kabul House"
    assert candidates[0].address == "4949 Oakton St, Skokie, IL 60077"
    assert candidates[0].website == "https://kabulhouse.com"


@pytest.mark.asyncio
async def test_timeouts_are_retried_until_the_page_loads():
    adapter = make_adapter(
        hfsaa.HfsaaSource,
        {CHICAGO_URL: [requests.Timeout("slow"), requests.Timeout("slow"), DummyResponse(text=CHICAGO_TABLE)]},
    )

    candidates = await collect(adapter, make_config(max_attempts=3))

    assert candidates[0].name == "Al-Noor Grill"
    assert adapter.session.calls.count(CHICAGO_URL) == 3
    assert adapter.errors == []


@pytest.mark.asyncio
async def test_exhausted_retries_skip_the_page_with_an_error():
    adapter = make_adapter(hfsaa.HfsaaSource, {CHICAGO_URL: [DummyResponse(503)]})

    candidates = await collect(adapter, make_config(max_attempts=2))

    assert candidates == []
    assert len(adapter.errors) == 1
    assert adapter.errors[0].kind == "transient"
    assert adapter.errors[0].retryable is True


@pytest.mark.asyncio
async def test_client_error_is_recorded_not_raised():
    adapter = make_adapter(hfsaa.HfsaaSource, {})

    candidates = await collect(adapter, make_config())

    assert candidates == []
    assert adapter.errors[0].kind == "http"


@pytest.mark.asyncio
async def test_max_results_stops_early():
    adapter = make_adapter(hfsaa.HfsaaSource, {CHICAGO_URL: [DummyResponse(text=CHICAGO_TABLE)]})

    candidates = await collect(adapter, make_config(max_results=2))

    assert len(candidates) == 2


@pytest.mark.asyncio
async def test_missing_markup_raises_structural_error():
    adapter = make_adapter(hfsaa.HfsaaSource, {CHICAGO_URL: [DummyResponse(text="<html><body><p>Coming soon</p></body></html>")]})

    with pytest.raises(StructuralError):
        await collect(adapter, make_config())


@pytest.mark.asyncio
async def test_robots_disallow_yields_nothing():
    adapter = make_adapter(
        hfsaa.HfsaaSource,
        {
            "https://www.hfsaa.org/robots.txt": [DummyResponse(text="User-agent: *\nDisallow: /")],
            CHICAGO_URL: [DummyResponse(text=CHICAGO_TABLE)],
        },
    )

    candidates = await collect(adapter, make_config(respect_robots_txt=True))

    assert candidates == []
    assert [error.kind for error in adapter.errors] == ["robots"]
    assert CHICAGO_URL not in adapter.session.calls


@pytest.mark.asyncio
async def test_rescrape_starts_over():
    adapter = make_adapter(hfsaa.HfsaaSource, {CHICAGO_URL: [DummyResponse(text=CHICAGO_TABLE)]})

    first = await collect(adapter, make_config())
    second = await collect(adapter, make_config())

    assert [c.name for c in first] == [c.name for c in second]


@pytest.mark.asyncio
async def test_region_without_chapters_yields_nothing():
    adapter = make_adapter(hfsaa.HfsaaSource, {})

    assert await collect(adapter, make_config(region="Anchorage")) == []
    assert adapter.session.calls == []


@pytest.mark.asyncio
async def test_ifanca_keeps_us_companies_when_state_filtered():
    adapter = make_adapter(ifanca.IfancaSource, {ifanca.LISTING_URL: [DummyResponse(text=IFANCA_TABLE)]})

    everything = await collect(adapter, make_config(region=None))
    us_only = await collect(adapter, make_config(region=None, state="IL"))

    assert len(everything) == 3
    assert [c.name for c in us_only] == ["Midamar Corporation", "Saffron Road"]
    assert us_only[0].category_hint == "BUTCHER"
    assert us_only[0].products == ("Meat", "Poultry")
    assert us_only[1].category_hint == "HALAL_FOOD"


def test_ifanca_helpers():
    assert ifanca.is_us("United States of America")
    assert not ifanca.is_us("Malaysia")
    assert ifanca.category_for_product_type("Bakery products") == "BAKERY"


@pytest.mark.asyncio
async def test_robots_fetch_waits_for_the_rate_limiter(monkeypatch):
    adapter = make_adapter(
        hfsaa.HfsaaSource,
        {
            "https://www.hfsaa.org/robots.txt": [DummyResponse(text="User-agent: *\nAllow: /")],
            CHICAGO_URL: [DummyResponse(text=CHICAGO_TABLE)],
        },
    )

    class RecordingLimiter:
        def __init__(self, interval, name="default"):
            self.interval = interval

        async def acquire(self):
            adapter.session.calls.append("acquire")

    monkeypatch.setattr(base, "RateLimiter", RecordingLimiter)

    candidates = await collect(adapter, make_config(respect_robots_txt=True))

    assert len(candidates) == 3
    assert adapter.session.calls == ["acquire", "https://www.hfsaa.org/robots.txt", "acquire", CHICAGO_URL]
