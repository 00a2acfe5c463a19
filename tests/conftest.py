from unittest.mock import Mock

import pytest

from app.config import settings


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def order_lookup_secret():
    """HMAC secret for the order lookup backend, restored after the test."""
    previous = settings.bot_order_lookup_hmac_secret
    settings.bot_order_lookup_hmac_secret = "test-secret"
    yield settings.bot_order_lookup_hmac_secret
    settings.bot_order_lookup_hmac_secret = previous
