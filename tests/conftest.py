import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Keep logging configured by one test (e.g. CLI runs) from leaking into others."""
    yield
    structlog.reset_defaults()
