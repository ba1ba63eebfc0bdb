import pytest

from config import get_settings
from records import CsvRecordSource, with_lookup_strategy
from services import process_statement

HEADER = "type, client, tx, amount\n"


@pytest.fixture(autouse=True)
def fresh_settings():
    """Drop cached settings so environment overrides in a test take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(params=["rescan", "index"])
def strategy(request):
    return request.param


@pytest.fixture
def run_statement(strategy):
    """Process CSV rows (header added) with the parametrized lookup strategy."""

    def _run(rows: str):
        source = with_lookup_strategy(CsvRecordSource.from_text(HEADER + rows), strategy)
        return process_statement(source)

    return _run
