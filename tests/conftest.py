"""Shared fixtures: fresh config per test, a fixed clock and a HubSpot pipeline."""

import json

import pytest

from scripts.lib.config import reset_config
from tests.factories import NOW, PIPELINE


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    for var in ("REPORT_TIMEZONE", "FOLLOW_UP_DAYS", "VAT_RATE", "PRICING_CONFIG_PATH"):
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def pipeline():
    return json.loads(json.dumps(PIPELINE))
