"""
Pytest configuration and fixtures.
"""

import pytest
import os
from pathlib import Path
from unittest.mock import patch

PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = PROJECT_ROOT / "config"


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "CONFIG_DIR": str(CONFIG_DIR),
        "STATE_STORE": "memory",
        "ESCALATION_WEBHOOK_URL": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.frontdesk.config import get_config
        get_config.cache_clear()
        yield


@pytest.fixture
def name_validator():
    from src.frontdesk.names import get_name_validator
    return get_name_validator()


@pytest.fixture
def extractor(name_validator):
    from src.frontdesk.slots import SlotExtractor
    return SlotExtractor(name_validator)


@pytest.fixture
def runner(extractor):
    from src.frontdesk.booking import BookingFlowRunner
    return BookingFlowRunner(extractor)


@pytest.fixture
def engine(runner):
    from src.frontdesk.engine import ConversationEngine
    return ConversationEngine(runner=runner)


@pytest.fixture
def file_source():
    """The sample tenant ("demo") and template ("hvac") shipped in config/."""
    from src.frontdesk.config_source import FileConfigSource
    return FileConfigSource(str(CONFIG_DIR))


@pytest.fixture
def demo_context(file_source):
    from src.frontdesk.engine import TenantContext
    from src.frontdesk.scenarios import ScenarioPool

    pool = ScenarioPool.build("demo", file_source)
    return TenantContext(tenant=file_source.get_tenant("demo"), pool=pool.scenarios)


@pytest.fixture
def settings():
    from src.frontdesk.models import TenantSettings
    return TenantSettings(company_name="Penguin Air")
