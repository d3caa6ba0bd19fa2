import pytest

from rasd.config import RelayRuntimeConfig
from rasd.service import RelayService


@pytest.fixture
def relay() -> RelayService:
    return RelayService(RelayRuntimeConfig(rate_limit_msgs_per_minute=0))
