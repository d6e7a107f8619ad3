import pytest

from axionvera_node.signing import (
    CacheStats,
    HsmSigner,
    HsmSignerConfig,
    LocalSigner,
    LocalSignerConfig,
    PublicKeyCache,
    SignerNotImplementedError,
    SigningError,
    SigningService,
    config_from_json,
    config_to_json,
    create_signer,
    verify_signature,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_local_signer_creation():
    signer = await LocalSigner.create("test_key.pem")
    public_key = await signer.get_public_key()
    message = b"Hello, World!"
    signature = await signer.sign(message)
    assert len(signature) == 64
    assert verify_signature(public_key, message, signature)
    assert await signer.get_key_id() == "local:test_key.pem"
    assert await signer.health_check() is True


@pytest.mark.asyncio
async def test_signature_fails_for_other_message():
    signer = await LocalSigner.create("k.pem")
    public_key = await signer.get_public_key()
    signature = await signer.sign(b"one")
    assert verify_signature(public_key, b"two", signature) is False


def test_verify_signature_rejects_bad_length():
    with pytest.raises(ValueError):
        verify_signature(bytes(32), b"m", b"short")


@pytest.mark.asyncio
async def test_public_key_cache_hit():
    cache = PublicKeyCache(60)
    first = await cache.get_or_fetch("test_key", lambda: _fetch(b"\x01" * 32))

    def must_not_fetch():
        raise AssertionError("fetch called on cache hit")

    cached = await cache.get_or_fetch("test_key", must_not_fetch)
    assert cached == first == b"\x01" * 32


async def _fetch(value):
    return value


@pytest.mark.asyncio
async def test_public_key_cache_expiry_and_stats():
    clock = FakeClock()
    cache = PublicKeyCache(2, clock)
    await cache.get_or_fetch("a", lambda: _fetch(b"\x02" * 32))
    assert cache.stats() == CacheStats(total_entries=1, expired_entries=0, valid_entries=1)
    clock.now += 3
    assert cache.stats() == CacheStats(total_entries=1, expired_entries=1, valid_entries=0)
    refreshed = await cache.get_or_fetch("a", lambda: _fetch(b"\x03" * 32))
    assert refreshed == b"\x03" * 32
    cache.clear()
    assert cache.stats().total_entries == 0


@pytest.mark.asyncio
async def test_signing_service_with_local_signer():
    service = SigningService(60)
    signer = await LocalSigner.create("test_key.pem")
    await service.add_signer("test_signer", signer)
    message = b"Test message for signing service"
    signature = await service.sign_with("test_signer", message)
    public_key = await service.get_public_key("test_signer")
    assert verify_signature(public_key, message, signature)

    service.set_default_signer("test_signer")
    default_signature = await service.sign(message)
    assert verify_signature(public_key, message, default_signature)
    assert await service.get_default_public_key() == public_key


@pytest.mark.asyncio
async def test_public_key_caching():
    clock = FakeClock()
    service = SigningService(2, clock)
    await service.add_signer("cache_test_signer", await LocalSigner.create("cache_test_key.pem"))
    key1 = await service.get_public_key("cache_test_signer")
    key2 = await service.get_public_key("cache_test_signer")
    assert key1 == key2
    stats = service.get_cache_stats()
    assert stats.total_entries == 1
    assert stats.valid_entries == 1
    clock.now += 3
    assert service.get_cache_stats().expired_entries == 1
    key3 = await service.get_public_key("cache_test_signer")
    assert key1 == key3
    assert service.get_cache_stats().valid_entries == 1


@pytest.mark.asyncio
async def test_signer_factory_local_config():
    signer = await create_signer(LocalSignerConfig(key_path="factory_test_key.pem"))
    public_key = await signer.get_public_key()
    message = b"Factory test message"
    signature = await signer.sign(message)
    assert verify_signature(public_key, message, signature)
    assert await signer.get_key_id() == "local:factory_test_key.pem"


@pytest.mark.asyncio
async def test_signer_factory_hsm_config():
    signer = await create_signer(HsmSignerConfig(slot_id=7, pin="placeholder"))
    assert isinstance(signer, HsmSigner)
    assert await signer.get_key_id() == "hsm:7"
    assert await signer.health_check() is False


@pytest.mark.asyncio
async def test_multiple_signers():
    service = SigningService(300)
    await service.add_signer("signer1", await LocalSigner.create("multi_test_key1.pem"))
    await service.add_signer("signer2", await LocalSigner.create("multi_test_key2.pem"))
    key1 = await service.get_public_key("signer1")
    key2 = await service.get_public_key("signer2")
    assert key1 != key2
    message = b"Multi-signer test"
    sig1 = await service.sign_with("signer1", message)
    sig2 = await service.sign_with("signer2", message)
    assert sig1 != sig2
    assert verify_signature(key1, message, sig1)
    assert verify_signature(key2, message, sig2)
    assert sorted(service.list_signers()) == ["signer1", "signer2"]
    assert service.default_signer_key == "signer1"


@pytest.mark.asyncio
async def test_health_checks():
    service = SigningService(300)
    await service.add_signer("healthy", await LocalSigner.create("health_test_key.pem"))
    assert await service.health_check_all() == {"healthy": True}


@pytest.mark.asyncio
async def test_unhealthy_signer_is_rejected():
    service = SigningService(300)
    with pytest.raises(SigningError):
        await service.add_signer("hsm", await HsmSigner.create(1, "placeholder"))
    assert service.list_signers() == []


@pytest.mark.asyncio
async def test_hsm_operations_not_implemented():
    signer = await HsmSigner.create(2, "placeholder")
    with pytest.raises(SignerNotImplementedError):
        await signer.get_public_key()
    with pytest.raises(SignerNotImplementedError):
        await signer.sign(b"data")


@pytest.mark.asyncio
async def test_cache_invalidation():
    service = SigningService(300)
    await service.add_signer("invalidate_test", await LocalSigner.create("invalidate_test_key.pem"))
    key1 = await service.get_public_key("invalidate_test")
    assert service.get_cache_stats().total_entries == 1
    service.invalidate_cache("invalidate_test")
    assert service.get_cache_stats().total_entries == 0
    key2 = await service.get_public_key("invalidate_test")
    assert key1 == key2


@pytest.mark.asyncio
async def test_error_handling():
    service = SigningService(300)
    with pytest.raises(SigningError):
        service.get_signer("non_existent")
    with pytest.raises(SigningError):
        await service.sign_with("non_existent", b"test")
    with pytest.raises(SigningError):
        await service.get_public_key("non_existent")
    with pytest.raises(SigningError):
        await service.sign(b"test")
    with pytest.raises(SigningError):
        await service.get_default_public_key()
    with pytest.raises(SigningError):
        service.set_default_signer("non_existent")


def test_signer_config_serialization():
    config = LocalSignerConfig(key_path="/path/to/key.pem")
    text = config_to_json(config)
    assert config_from_json(text) == LocalSignerConfig(key_path="/path/to/key.pem")


def test_local_config_json_form():
    assert config_to_json(LocalSignerConfig(key_path="k.pem")) == '{"Local": {"key_path": "k.pem"}}'


def test_hsm_config_round_trip():
    config = HsmSignerConfig(slot_id=4, pin="placeholder")
    assert config_from_json(config_to_json(config)) == config


@pytest.mark.parametrize(
    "text",
    ['{"Unknown": {}}', '{"Local": {}}', "[]", '{"Hsm": {"slot_id": -1, "pin": "placeholder"}}'],
)
def test_config_from_json_rejects_invalid(text):
    with pytest.raises(ValueError):
        config_from_json(text)