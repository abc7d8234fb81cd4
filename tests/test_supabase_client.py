"""Tests for the process-wide Supabase client holder."""

from unittest.mock import MagicMock, patch

import pytest

from machina.database import supabase_client
from machina.database.supabase_client import SupabaseClient, ping


@pytest.fixture(autouse=True)
def fresh_clients():
    SupabaseClient._client = None
    SupabaseClient._service_client = None
    yield
    SupabaseClient._client = None
    SupabaseClient._service_client = None


def _settings(**overrides):
    values = dict(supabase_url="http://localhost:54321", supabase_key="anon", supabase_service_role_key=None)
    values.update(overrides)
    return MagicMock(**values)


class TestServiceClient:
    def test_prefers_service_role_key(self):
        with patch.object(supabase_client, "settings", _settings(supabase_service_role_key="service")), \
                patch.object(supabase_client, "create_client") as create:
            client = SupabaseClient.get_service_client()

        create.assert_called_once_with("http://localhost:54321", "service")
        assert client is create.return_value

    def test_falls_back_to_anon_client_once(self):
        with patch.object(supabase_client, "settings", _settings()), \
                patch.object(supabase_client, "create_client") as create:
            first = SupabaseClient.get_service_client()
            second = SupabaseClient.get_service_client()

        create.assert_called_once_with("http://localhost:54321", "anon")
        assert first is second

    def test_requires_configuration(self):
        with patch.object(supabase_client, "settings", _settings(supabase_url="", supabase_key="")):
            with pytest.raises(RuntimeError):
                SupabaseClient.get_service_client()


def test_ping(fake_db):
    assert ping(fake_db) is True

    broken = MagicMock()
    broken.table.side_effect = ConnectionError("refused")
    assert ping(broken) is False
