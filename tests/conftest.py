"""Pytest configuration and fixtures."""

import os

import pytest

# Set before app modules are imported during collection
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("START_WORKERS_ON_BOOT", "false")
os.environ.setdefault("RELEVANCE_ENV", "test")


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["ADMIN_API_KEY"] = "test-admin-key"
    os.environ["START_WORKERS_ON_BOOT"] = "false"
    os.environ["RELEVANCE_ENV"] = "test"


@pytest.fixture
def user_ctx():
    from app.core.schemas_auth import AuthContext

    return AuthContext(user_id="user-1", token="test-token")
