from __future__ import annotations

import hashlib
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from logagg.api.db.memory import InMemoryAPIKeyRepository
from logagg.api.errors import Forbidden, KeyExpired, KeyNotFound, KeyRevoked, NotFound, Unauthorized
from logagg.api.schemas.api_keys import APIKey, APIKeyStatus, APIKeyType, TenantContext
from logagg.api.services.tenant_authority import (
    APIKeyService,
    hash_key,
    parse_bootstrap_keys,
    require_agent_key,
    require_customer_key,
)


@pytest.fixture
def repo() -> InMemoryAPIKeyRepository:
    return InMemoryAPIKeyRepository()


@pytest.fixture
def service(repo, clock):
    svc = APIKeyService(repo, clock=clock)
    yield svc
    svc.close()


def _stored(clock, **overrides) -> APIKey:
    fields = dict(
        id="k1",
        organization_id="acme",
        key_type=APIKeyType.agent,
        key_hash=hash_key("secret"),
        name="agent",
        created_at=clock(),
    )
    fields.update(overrides)
    return APIKey(**fields)


def test_hash_key_is_hex_sha256():
    assert hash_key("abc") == hashlib.sha256(b"abc").hexdigest()
    assert len(hash_key("abc")) == 64


def test_unknown_digest_is_key_not_found(service):
    with pytest.raises(KeyNotFound):
        service.validate_key(hash_key("nope"))


def test_revoked_key_fails_even_when_expired(repo, service, clock):
    repo.create(_stored(clock, status=APIKeyStatus.revoked, expires_at=clock() - timedelta(days=1)))
    with pytest.raises(KeyRevoked):
        service.validate_key(hash_key("secret"))


def test_expired_active_key_is_key_expired(repo, service, clock):
    repo.create(_stored(clock, expires_at=clock() - timedelta(seconds=1)))
    with pytest.raises(KeyExpired):
        service.validate_key(hash_key("secret"))


def test_expiry_at_exactly_now_is_expired(repo, service, clock):
    repo.create(_stored(clock, expires_at=clock()))
    with pytest.raises(KeyExpired):
        service.validate_key(hash_key("secret"))


def test_auth_errors_are_unauthorized_kinds():
    assert issubclass(KeyNotFound, Unauthorized)
    assert issubclass(KeyRevoked, Unauthorized)
    assert issubclass(KeyExpired, Unauthorized)


def test_successful_validation_touches_last_used(repo, clock):
    executor = ThreadPoolExecutor(max_workers=1)
    service = APIKeyService(repo, clock=clock, touch_executor=executor)
    repo.create(_stored(clock))

    key = service.validate_key(hash_key("secret"))
    executor.shutdown(wait=True)

    assert key.id == "k1"
    assert repo.get_by_id("acme", "k1").last_used_at == clock()


def test_touch_failure_does_not_fail_validation(repo, clock, monkeypatch: pytest.MonkeyPatch):
    def _boom(key_id, at):
        raise RuntimeError("db down")

    monkeypatch.setattr(repo, "update_last_used", _boom)
    executor = ThreadPoolExecutor(max_workers=1)
    service = APIKeyService(repo, clock=clock, touch_executor=executor)
    repo.create(_stored(clock))

    assert service.validate_key(hash_key("secret")).id == "k1"
    executor.shutdown(wait=True)


class _DeferredExecutor:
    """Holds submitted work until run_all(); stands in for a busy touch worker."""

    def __init__(self):
        self.queued = []

    def submit(self, fn, *args):
        self.queued.append((fn, args))

    def run_all(self):
        queued, self.queued = self.queued, []
        for fn, args in queued:
            fn(*args)

    def shutdown(self, wait=True):
        self.run_all()


def test_queued_touches_collapse_per_key(repo, clock):
    executor = _DeferredExecutor()
    service = APIKeyService(repo, clock=clock, touch_executor=executor)
    repo.create(_stored(clock))
    repo.create(_stored(clock, id="k2", key_hash=hash_key("other")))

    for _ in range(100):
        service.validate_key(hash_key("secret"))
        clock.advance(seconds=1)
    service.validate_key(hash_key("other"))
    assert len(executor.queued) == 2

    executor.run_all()
    # The single write carries the latest validation time.
    assert repo.get_by_id("acme", "k1").last_used_at == clock() - timedelta(seconds=1)

    service.validate_key(hash_key("secret"))
    assert len(executor.queued) == 1


def test_authenticate_returns_tenant_context(service):
    plaintext, key = service.generate_key("acme", "dashboard", APIKeyType.customer)

    ctx = service.authenticate(plaintext)
    assert ctx == TenantContext(organization_id="acme", key_type=APIKeyType.customer, key_id=key.id)


@pytest.mark.parametrize("presented", [None, ""])
def test_authenticate_without_key_is_unauthorized(service, presented):
    with pytest.raises(Unauthorized):
        service.authenticate(presented)


def test_generated_key_stores_only_the_hash(repo, service, clock):
    plaintext, key = service.generate_key("acme", "agent", APIKeyType.agent, expires_in=timedelta(days=30))

    stored = repo.get_by_id("acme", key.id)
    assert stored.key_hash == hash_key(plaintext)
    assert plaintext not in stored.model_dump_json()
    assert stored.expires_at == clock() + timedelta(days=30)


def test_generated_key_expires_when_clock_passes_expiry(service, clock):
    plaintext, _ = service.generate_key("acme", "short", APIKeyType.agent, expires_in=timedelta(hours=1))
    service.authenticate(plaintext)

    clock.advance(hours=1)
    with pytest.raises(KeyExpired):
        service.authenticate(plaintext)


def test_revoke_is_scoped_to_the_owning_organization(service):
    plaintext, key = service.generate_key("acme", "agent", APIKeyType.agent)

    with pytest.raises(NotFound):
        service.revoke_key("globex", key.id)
    service.authenticate(plaintext)

    service.revoke_key("acme", key.id)
    with pytest.raises(KeyRevoked):
        service.authenticate(plaintext)


def test_list_and_get_never_cross_organizations(service):
    _, a = service.generate_key("acme", "a", APIKeyType.agent)
    service.generate_key("globex", "g", APIKeyType.agent)

    assert [k.id for k in service.list_keys("acme")] == [a.id]
    with pytest.raises(NotFound):
        service.get_key("globex", a.id)


def test_guards_check_key_type():
    agent = TenantContext(organization_id="acme", key_type=APIKeyType.agent, key_id="a")
    customer = TenantContext(organization_id="acme", key_type=APIKeyType.customer, key_id="c")

    assert require_agent_key(agent) is agent
    assert require_customer_key(customer) is customer
    with pytest.raises(Forbidden):
        require_agent_key(customer)
    with pytest.raises(Forbidden):
        require_customer_key(agent)
    with pytest.raises(Forbidden):
        require_customer_key(None)


def test_bootstrap_keys_are_parsed_and_seeded_once(service):
    raw = "acme:agent:agent-secret, acme:customer:cust-secret, bad-entry, globex:robot:x"
    parsed = parse_bootstrap_keys(raw)
    assert [(o, t) for o, t, _ in parsed] == [("acme", APIKeyType.agent), ("acme", APIKeyType.customer)]

    assert service.seed_bootstrap_keys(raw) == 2
    assert service.seed_bootstrap_keys(raw) == 0
    assert service.authenticate("cust-secret").key_type == APIKeyType.customer
