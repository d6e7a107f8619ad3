"""Message signing behind a common interface, with a cache of public keys."""

from __future__ import annotations

import abc
import inspect
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

logger = logging.getLogger(__name__)

PUBLIC_KEY_SIZE = 32
SIGNATURE_SIZE = 64


class SigningError(Exception):
    """Raised when a signer is missing, unhealthy or fails."""


class SignerNotImplementedError(SigningError):
    """Raised by signers whose backend does not support an operation."""


class Signer(abc.ABC):
    """A source of signatures backed by some key store."""

    @abc.abstractmethod
    async def get_public_key(self) -> bytes:
        """The raw 32-byte Ed25519 public key."""

    @abc.abstractmethod
    async def sign(self, message: bytes) -> bytes:
        """The 64-byte signature of ``message``."""

    @abc.abstractmethod
    async def get_key_id(self) -> str:
        """The identifier of the signing key."""

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Whether the signer can currently be used."""


@dataclass(frozen=True)
class LocalSignerConfig:
    key_path: str


@dataclass(frozen=True)
class HsmSignerConfig:
    slot_id: int
    pin: str


SignerConfig = Union[LocalSignerConfig, HsmSignerConfig]


def config_to_json(config: SignerConfig) -> str:
    """JSON form of a signer configuration, tagged with its kind."""
    if isinstance(config, LocalSignerConfig):
        return json.dumps({"Local": {"key_path": config.key_path}})
    if isinstance(config, HsmSignerConfig):
        return json.dumps({"Hsm": {"slot_id": config.slot_id, "pin": config.pin}})
    raise TypeError(f"not a signer configuration: {config!r}")


def config_from_json(text: str) -> SignerConfig:
    """Read a signer configuration written by :func:`config_to_json`."""
    document = json.loads(text)
    if not isinstance(document, dict) or len(document) != 1:
        raise ValueError("a signer configuration holds exactly one tagged kind")
    ((kind, body),) = document.items()
    if not isinstance(body, dict):
        raise ValueError(f"configuration body for {kind!r} must be an object")
    try:
        if kind == "Local":
            return LocalSignerConfig(key_path=str(body["key_path"]))
        if kind == "Hsm":
            slot_id = body["slot_id"]
            if not isinstance(slot_id, int) or isinstance(slot_id, bool) or slot_id < 0:
                raise ValueError("slot_id must be a non-negative integer")
            return HsmSignerConfig(slot_id=slot_id, pin=str(body["pin"]))
    except KeyError as exc:
        raise ValueError(f"missing field {exc.args[0]!r} in {kind!r} configuration") from exc
    raise ValueError(f"unknown signer kind {kind!r}")


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    expired_entries: int
    valid_entries: int


@dataclass(frozen=True)
class _CacheEntry:
    public_key: bytes
    cached_at: float
    ttl: float


class PublicKeyCache:
    """Public keys by key id, each kept for a fixed time-to-live."""

    def __init__(
        self, default_ttl_seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}

    def _expired(self, entry: _CacheEntry) -> bool:
        return self._clock() > entry.cached_at + entry.ttl

    async def get_or_fetch(
        self, key_id: str, fetch: Callable[[], Union[bytes, Awaitable[bytes]]]
    ) -> bytes:
        """The cached key for ``key_id``, or the result of ``fetch`` when absent or stale."""
        entry = self._entries.get(key_id)
        if entry is not None:
            if not self._expired(entry):
                logger.debug("Using cached public key for key_id: %s", key_id)
                return entry.public_key
            logger.debug("Cached public key expired for key_id: %s", key_id)
        logger.debug("Fetching fresh public key for key_id: %s", key_id)
        value: Any = fetch()
        if inspect.isawaitable(value):
            value = await value
        public_key = bytes(value)
        self._entries[key_id] = _CacheEntry(public_key, self._clock(), self.default_ttl_seconds)
        return public_key

    def invalidate(self, key_id: str) -> None:
        self._entries.pop(key_id, None)
        logger.debug("Invalidated cache entry for key_id: %s", key_id)

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Cleared all public key cache entries")

    def stats(self) -> CacheStats:
        total = len(self._entries)
        expired = sum(1 for entry in self._entries.values() if self._expired(entry))
        return CacheStats(total_entries=total, expired_entries=expired, valid_entries=total - expired)


class LocalSigner(Signer):
    """Ed25519 signer holding its key in process memory."""

    def __init__(self, signing_key: SigningKey, key_id: str) -> None:
        self._signing_key = signing_key
        self._key_id = key_id

    @classmethod
    async def create(cls, key_path: str) -> LocalSigner:
        """A signer named after ``key_path``, with a freshly generated key pair."""
        return cls(SigningKey.generate(), f"local:{key_path}")

    async def get_public_key(self) -> bytes:
        return bytes(self._signing_key.verify_key)

    async def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(bytes(message)).signature

    async def get_key_id(self) -> str:
        return self._key_id

    async def health_check(self) -> bool:
        return True


class HsmSigner(Signer):
    """Signer for a hardware security module slot; key operations are unsupported."""

    def __init__(self, slot_id: int) -> None:
        self.slot_id = slot_id
        self._key_id = f"hsm:{slot_id}"

    @classmethod
    async def create(cls, slot_id: int, pin: str) -> HsmSigner:
        return cls(slot_id)

    async def get_public_key(self) -> bytes:
        raise SignerNotImplementedError("HSM public key retrieval not implemented")

    async def sign(self, message: bytes) -> bytes:
        raise SignerNotImplementedError("HSM signing not implemented")

    async def get_key_id(self) -> str:
        return self._key_id

    async def health_check(self) -> bool:
        return False


async def create_signer(config: SignerConfig) -> Signer:
    """Build the signer described by ``config``."""
    if isinstance(config, LocalSignerConfig):
        logger.info("Creating local file-based signer with key_path: %s", config.key_path)
        return await LocalSigner.create(config.key_path)
    if isinstance(config, HsmSignerConfig):
        logger.info("Creating HSM signer with slot_id: %s", config.slot_id)
        return await HsmSigner.create(config.slot_id, config.pin)
    raise TypeError(f"not a signer configuration: {config!r}")


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Whether ``signature`` is a valid Ed25519 signature of ``message`` by ``public_key``."""
    public_key = bytes(public_key)
    signature = bytes(signature)
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise ValueError(f"public key must be {PUBLIC_KEY_SIZE} bytes, got {len(public_key)}")
    if len(signature) != SIGNATURE_SIZE:
        raise ValueError(f"signature must be {SIGNATURE_SIZE} bytes, got {len(signature)}")
    try:
        VerifyKey(public_key).verify(bytes(message), signature)
    except BadSignatureError:
        return False
    return True


class SigningService:
    """Registry of signers with a default one and cached public keys."""

    def __init__(
        self, cache_ttl_seconds: float, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._signers: dict[str, Signer] = {}
        self._cache = PublicKeyCache(cache_ttl_seconds, clock)
        self.default_signer_key: str | None = None

    async def add_signer(self, key_id: str, signer: Signer) -> None:
        """Register a healthy signer; the first one added becomes the default."""
        if not await signer.health_check():
            logger.warning("Signer health check failed for key_id: %s", key_id)
            raise SigningError(f"Signer health check failed for key_id: {key_id}")
        self._signers[key_id] = signer
        if self.default_signer_key is None:
            self.default_signer_key = key_id
        logger.info("Added signer with key_id: %s", key_id)

    def get_signer(self, key_id: str) -> Signer:
        try:
            return self._signers[key_id]
        except KeyError:
            raise SigningError(f"Signer not found for key_id: {key_id}") from None

    def _default_key(self) -> str:
        if self.default_signer_key is None:
            raise SigningError("No default signer configured")
        return self.default_signer_key

    def get_default_signer(self) -> Signer:
        return self.get_signer(self._default_key())

    def set_default_signer(self, key_id: str) -> None:
        if key_id not in self._signers:
            raise SigningError(f"Signer not found for key_id: {key_id}")
        self.default_signer_key = key_id

    async def sign(self, message: bytes) -> bytes:
        """Sign with the default signer."""
        return await self.get_default_signer().sign(message)

    async def sign_with(self, key_id: str, message: bytes) -> bytes:
        return await self.get_signer(key_id).sign(message)

    async def get_public_key(self, key_id: str) -> bytes:
        """Public key of ``key_id``, served from the cache while it is fresh."""
        signer = self.get_signer(key_id)
        return await self._cache.get_or_fetch(key_id, signer.get_public_key)

    async def get_default_public_key(self) -> bytes:
        return await self.get_public_key(self._default_key())

    def invalidate_cache(self, key_id: str) -> None:
        self._cache.invalidate(key_id)

    def get_cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def list_signers(self) -> list[str]:
        return list(self._signers)

    async def health_check_all(self) -> dict[str, bool]:
        """Health of every registered signer; a failing check counts as unhealthy."""
        results: dict[str, bool] = {}
        for key_id, signer in self._signers.items():
            try:
                healthy = bool(await signer.health_check())
            except Exception as exc:  # any failure means the signer is unusable
                logger.error("Health check error for signer %s: %s", key_id, exc)
                healthy = False
            if not healthy:
                logger.warning("Signer health check failed for key_id: %s", key_id)
            results[key_id] = healthy
        return results