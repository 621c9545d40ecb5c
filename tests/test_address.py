"""Address resolution and locality."""

import pytest

from amp_client.address import AddressResolver, build_address, sanitize_address_for_path


@pytest.fixture
def resolver():
    return AddressResolver(tenant="acme", local_domain="mesh.local")


def test_bare_name_resolves_to_local_mesh(resolver):
    addr = resolver.resolve("alice")
    assert str(addr) == "alice@acme.mesh.local"
    assert addr.is_local
    assert addr.tenant == "acme"
    assert addr.provider == "mesh.local"


def test_external_address_splits_provider_from_tenant(resolver):
    addr = resolver.resolve("bob@other.provider.ai")
    assert addr.name == "bob"
    assert addr.tenant == "other"
    assert addr.provider == "provider.ai"
    assert addr.scope is None
    assert not addr.is_local


def test_scope_labels(resolver):
    addr = resolver.resolve("bob@eng.team.acme.crabmail.ai")
    assert addr.scope == "eng.team"
    assert addr.tenant == "acme"
    assert addr.provider == "crabmail.ai"
    assert str(addr) == "bob@eng.team.acme.crabmail.ai"


def test_short_domains(resolver):
    two = resolver.resolve("bob@acme.local")
    assert (two.tenant, two.provider, two.is_local) == ("acme", "local", True)

    one = resolver.resolve("bob@local")
    assert (one.tenant, one.provider, one.is_local) == ("default", "local", True)


def test_legacy_default_domain_is_local(resolver):
    assert resolver.resolve("bob@acme.aimaestro.local").is_local


def test_domain_is_lowercased(resolver):
    addr = resolver.resolve("bob@Acme.Provider.AI")
    assert addr.name == "bob"
    assert addr.tenant == "acme"
    assert addr.provider == "provider.ai"


def test_split_at_last_at_sign(resolver):
    # The name part may not itself contain '@', so this falls back to a bare name.
    addr = resolver.resolve("odd@name@acme.provider.ai")
    assert addr.provider == "mesh.local"
    assert addr.name == "odd_name_acme.provider.ai"


@pytest.mark.parametrize("value", ["", "@acme.local", "bob@", "bob@acme..local", "bob@acme.-bad", "has space"])
def test_malformed_input_never_raises(resolver, value):
    addr = resolver.resolve(value)
    assert addr.is_local
    assert addr.provider == "mesh.local"


def test_organization_used_when_no_tenant():
    resolver = AddressResolver(tenant=None, local_domain="mesh.local", organization="initech")
    assert str(resolver.resolve("alice")) == "alice@initech.mesh.local"
    assert str(AddressResolver(local_domain="mesh.local").resolve("alice")) == "alice@default.mesh.local"


@pytest.mark.parametrize("value", [
    "alice",
    "bob@other.provider.ai",
    "carol@eng.acme.crabmail.ai",
    "dave@acme.local",
    "erin@local",
    "",
    "@acme.local",
    "bob@",
    "bob@acme..local",
    "has space",
    "Tab\tname",
    "nul\x00byte",
])
def test_round_trip(resolver, value):
    first = resolver.resolve(value)
    again = resolver.resolve(resolver.build(first.name, first.tenant, first.provider, first.scope))
    assert (again.name, again.tenant, again.provider) == (first.name, first.tenant, first.provider)


def test_build_address_defaults():
    assert build_address("alice") == "alice@default.aimaestro.local"
    assert build_address("alice", "acme", "crabmail.ai", scope="eng") == "alice@eng.acme.crabmail.ai"


def test_sanitize_address_for_path():
    assert sanitize_address_for_path("bob@other.provider.ai") == "bob_other_provider_ai"
    assert sanitize_address_for_path("../../etc@x") == "____etc_x"


@pytest.mark.parametrize("value,name", [
    ("bob@", "bob_"),
    ("has space", "has_space"),
    ("Tab\tname", "Tab_name"),
    ("../../etc", ".._.._etc"),
    ("", "_"),
])
def test_malformed_names_are_normalised(resolver, value, name):
    addr = resolver.resolve(value)
    assert addr.name == name
    assert str(addr) == f"{name}@acme.mesh.local"
