import pytest

from amp_client.config import Settings
from amp_client.identity import Identity
from amp_client.models.registration import Registration

LOCAL_DOMAIN = "mesh.local"
MESH_URL = "http://mesh.test"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        agents_base=tmp_path / "agents",
        mesh_url=MESH_URL,
        local_domain=LOCAL_DOMAIN,
        scan_poll_interval=0.0,
        scan_poll_attempts=3,
        transfer_timeout=5.0,
    )


@pytest.fixture
def make_identity(settings):
    def _make(name: str, tenant: str = "acme") -> Identity:
        return Identity.create(
            settings.agents_base / name, name, tenant,
            provider_domain=settings.local_domain, mesh_url=settings.mesh_url,
        )
    return _make


@pytest.fixture
def identity(make_identity):
    return make_identity("agent")


@pytest.fixture
def external_registration():
    return Registration(
        provider="provider.ai",
        api_url="https://api.provider.ai/v1",
        address="agent@acme.provider.ai",
        api_key="amp_live_test",
        registered_at="2026-01-01T00:00:00Z",
        tenant="acme",
        agent_name="agent",
    )
