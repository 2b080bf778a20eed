"""
Shared fixtures for the threat scraper tests
"""

import pytest

from threat_scraper.core.logging import setup_logging

from tests.fakes import RecordingStore, ScriptedClassifierGateway


@pytest.fixture(scope="session", autouse=True)
def test_logging(tmp_path_factory):
    """Route package logging to a temporary file"""
    log_file = tmp_path_factory.mktemp("logs") / "test.log"
    setup_logging(level="DEBUG", log_file=str(log_file))


@pytest.fixture
def recording_store():
    return RecordingStore()


@pytest.fixture
def scripted_gateway():
    return ScriptedClassifierGateway()
