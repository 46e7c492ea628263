import pytest

from main import app
from routers import rate_limit


@pytest.fixture(autouse=True)
def metered_routes_without_quotas():
    """Generation, proxy and payment routes run unthrottled; local quota counters start empty."""
    was_disabled = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    try:
        yield
    finally:
        rate_limit._local_counters.clear()
        app.state.disable_rate_limits = was_disabled
