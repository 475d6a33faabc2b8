import pytest

from attestation_relay.observability import reset_metrics


@pytest.fixture(autouse=True)
def metrics():
    """Fresh global metrics for every test."""
    return reset_metrics()
