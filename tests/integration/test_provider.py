"""
Integration tests for amp-client: tests against a real mesh and provider.

Requires environment variables:
  AMP_MESH_URL         - running mesh, e.g. http://localhost:23000
  AMP_TEST_PROVIDER    - (optional) external provider domain, e.g. crabmail.ai
  AMP_TEST_RECIPIENT   - (optional) address on that provider to send to

Run: AMP_INTEGRATION=1 pytest tests/integration/ -v
"""

import os

import pytest

from amp_client import AsyncAMPClient, Settings

SKIP = not os.environ.get("AMP_INTEGRATION")
MESH_URL = os.environ.get("AMP_MESH_URL", "http://localhost:23000")
PROVIDER = os.environ.get("AMP_TEST_PROVIDER", "")
RECIPIENT = os.environ.get("AMP_TEST_RECIPIENT", "")

pytestmark = pytest.mark.skipif(SKIP, reason="AMP_INTEGRATION not set")


def make_client(tmp_path, name: str) -> AsyncAMPClient:
    settings = Settings(agents_base=tmp_path / "agents", mesh_url=MESH_URL)
    return AsyncAMPClient.init(settings.agents_base / name, name, "integration", settings=settings)


class TestMesh:
    """Local mesh registration and delivery"""

    @pytest.mark.asyncio
    async def test_register_and_send_to_self(self, tmp_path):
        client = make_client(tmp_path, "itest-sender")
        result = await client.send(client.identity.name, "integration", "ping")
        assert result.message_id
        assert result.method in ("mesh", "filesystem")
        assert [m.id for m in client.sent()] == [result.message_id]

    @pytest.mark.asyncio
    async def test_fetch_from_mesh(self, tmp_path):
        client = make_client(tmp_path, "itest-fetcher")
        await client.register(client.settings.local_domain)
        result = await client.fetch()
        assert client.settings.local_domain not in result.errors


@pytest.mark.skipif(not (PROVIDER and RECIPIENT), reason="AMP_TEST_PROVIDER/AMP_TEST_RECIPIENT not set")
class TestExternalProvider:
    """Federated provider registration and delivery"""

    @pytest.mark.asyncio
    async def test_register_send_fetch(self, tmp_path):
        client = make_client(tmp_path, "itest-external")
        registration = await client.register(PROVIDER, "integration")
        assert registration.api_key

        result = await client.send(RECIPIENT, "integration", "ping from amp-client")
        assert result.method == "external"

        fetched = await client.fetch(PROVIDER)
        assert PROVIDER not in fetched.errors
