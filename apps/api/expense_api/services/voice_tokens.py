"""Voice token issuance and validation.

A voice token is one short word the signed-in user reads to the voice bot.
Each live token is stored as a ``<word>.json`` blob and expires 15 minutes
after it is issued. There are no locks or transactions: the blob store is the
only shared state, so concurrent requests can interleave between any two
storage calls.

Known limitations, kept on purpose:

* When the store cannot do create-if-absent writes, two users issuing at the
  same moment may both pick the same free word; the later write wins and the
  earlier user's token silently points at the other user.
* Two issues for the same user racing past the invalidation step can leave
  that user with two live tokens until they expire. Lookups return whichever
  record the scan meets first.
* When all 50 words are live, issuing reuses an occupied word instead of
  failing the request.
"""
from __future__ import annotations

import logging
import math
import secrets
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .blob_store import BlobAlreadyExistsError, BlobNotFoundError, BlobStore, BlobStoreError

logger = logging.getLogger(__name__)

VOICE_WORDS: tuple[str, ...] = (
    "mela", "pera", "casa", "sole", "luna",
    "mare", "lago", "rosa", "verde", "rosso",
    "giallo", "blu", "nero", "bianco", "tavolo",
    "sedia", "porta", "libro", "penna", "carta",
    "acqua", "fuoco", "terra", "vento", "pioggia",
    "neve", "stella", "nuvola", "fiore", "albero",
    "gatto", "cane", "uccello", "pesce", "cavallo",
    "pizza", "pasta", "pane", "vino", "caffe",
    "treno", "aereo", "auto", "bici", "nave",
    "ponte", "torre", "chiesa", "piazza", "fiume",
)

TOKEN_VALIDITY_MINUTES = 15
TOKEN_VALIDITY = timedelta(minutes=TOKEN_VALIDITY_MINUTES)
BLOB_SUFFIX = ".json"

Clock = Callable[[], datetime]
WordChooser = Callable[[Sequence[str]], str]


class ServiceUnavailableError(RuntimeError):
    """Raised when the token store is unreachable or not initialized."""


class InvalidTokenError(LookupError):
    """Base class for tokens that cannot be used."""


class TokenNotFoundError(InvalidTokenError):
    """No record exists for the presented token."""


class TokenExpiredError(InvalidTokenError):
    """The record existed but its validity window has passed."""


class MalformedRecordError(ValueError):
    """A stored blob could not be parsed as a token record."""


class TokenRecord(BaseModel):
    """Persisted shape of a voice token blob."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    token: str
    user_id: str = Field(alias="userId")
    user_email: str = Field(alias="userEmail")
    expires_at: datetime = Field(alias="expiresAt")
    created_at: datetime = Field(alias="createdAt")

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "TokenRecord":
        try:
            record = cls.model_validate_json(data)
        except ValueError as exc:
            raise MalformedRecordError(str(exc)) from exc
        if record.expires_at.tzinfo is None:
            raise MalformedRecordError("expiresAt has no timezone")
        return record


@dataclass(slots=True)
class IssuedToken:
    token: str
    expires_at: datetime
    valid_for_minutes: int = TOKEN_VALIDITY_MINUTES


@dataclass(slots=True)
class VoiceIdentity:
    user_id: str
    user_email: str


@dataclass(slots=True)
class ActiveToken:
    token: str
    expires_at: datetime
    remaining_seconds: int


@dataclass(slots=True)
class TokenStats:
    active_tokens: int
    vocabulary_size: int = len(VOICE_WORDS)
    words: list[str] = field(default_factory=lambda: list(VOICE_WORDS))


def normalize_token(token: str) -> str:
    """Tokens are case-insensitive; stored keys are always lowercase."""

    return token.strip().lower()


def _blob_key(token: str) -> str:
    return f"{token}{BLOB_SUFFIX}"


def _token_from_key(key: str) -> str:
    return key[: -len(BLOB_SUFFIX)] if key.endswith(BLOB_SUFFIX) else key


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issue, verify and reclaim voice tokens kept in a blob store."""

    def __init__(
        self,
        store: BlobStore,
        *,
        clock: Optional[Clock] = None,
        chooser: Optional[WordChooser] = None,
    ) -> None:
        self._store = store
        self._clock = clock or _utcnow
        self._choose = chooser or secrets.choice

    @property
    def is_available(self) -> bool:
        return self._store.is_ready

    async def initialize(self) -> bool:
        """Prepare the backing container; returns whether the service can be used."""

        return await self._store.initialize()

    async def _ensure_ready(self) -> None:
        if self._store.is_ready:
            return
        if not await self._store.initialize():
            raise ServiceUnavailableError("Voice token store not available")

    async def generate_voice_token(self, user_id: str, user_email: str) -> IssuedToken:
        """Issue a fresh token for the user, replacing any token they already hold."""

        await self._ensure_ready()
        try:
            await self.invalidate_user_token(user_id)
            await self.cleanup_expired_tokens()
            used = await self._used_words()
            token = await self._write_new_record(user_id, user_email, used)
        except BlobStoreError as exc:
            raise ServiceUnavailableError("Voice token store not available") from exc

        logger.info(
            "Voice token generated for user %s: %r (expires at %s)",
            user_email,
            token.token,
            token.expires_at.isoformat(),
        )
        return token

    async def _used_words(self) -> set[str]:
        used: set[str] = set()
        async for key in self._store.list_keys():
            used.add(_token_from_key(key))
        return used

    def _pick_word(self, used: set[str]) -> str:
        word = self._choose(VOICE_WORDS)
        attempts = 1
        while word in used and attempts < len(VOICE_WORDS):
            word = self._choose(VOICE_WORDS)
            attempts += 1
        return word

    async def _write_new_record(self, user_id: str, user_email: str, used: set[str]) -> IssuedToken:
        conditional = self._store.supports_conditional_put
        while True:
            word = self._pick_word(used)
            saturated = word in used
            now = self._clock()
            record = TokenRecord(
                token=word,
                user_id=user_id,
                user_email=user_email,
                created_at=now,
                expires_at=now + TOKEN_VALIDITY,
            )
            if saturated:
                logger.warning("No free voice word after %d attempts; reusing %r", len(VOICE_WORDS), word)
            try:
                await self._store.put(
                    _blob_key(word),
                    record.to_bytes(),
                    if_absent=conditional and not saturated,
                )
            except BlobAlreadyExistsError:
                logger.info("Voice word %r was taken concurrently; picking another", word)
                used.add(word)
                continue
            return IssuedToken(token=word, expires_at=record.expires_at)

    async def _read_and_reap(self, key: str) -> Optional[TokenRecord]:
        """Load the record under ``key``; expired or corrupt records are deleted and read as absent.

        Raises ``TokenExpiredError`` when an expired record was reaped so callers that
        care can tell it apart from a missing one.
        """

        try:
            data = await self._store.get(key)
        except BlobNotFoundError:
            return None

        try:
            record = TokenRecord.from_bytes(data)
        except MalformedRecordError as exc:
            logger.warning("Deleting unreadable voice token blob %s: %s", key, exc)
            await self._store.delete(key)
            return None

        if record.is_expired(self._clock()):
            await self._store.delete(key)
            raise TokenExpiredError(record.token)
        return record

    async def _scan_live_records(self) -> AsyncIterator[tuple[str, TokenRecord]]:
        """Yield ``(key, record)`` for every live record, reaping dead ones on the way."""

        async with aclosing(self._store.list_keys()) as keys:
            async for key in keys:
                try:
                    record = await self._read_and_reap(key)
                except TokenExpiredError:
                    continue
                except BlobStoreError as exc:
                    logger.warning("Dropping unreadable voice token blob %s during scan: %s", key, exc)
                    await self._discard(key)
                    continue
                if record is not None:
                    yield key, record

    async def _discard(self, key: str) -> bool:
        """Best-effort delete used by sweeps; never raises."""

        try:
            await self._store.delete(key)
        except BlobStoreError as exc:
            logger.warning("Could not delete voice token blob %s: %s", key, exc)
            return False
        return True

    async def validate_voice_token(self, token: str) -> VoiceIdentity:
        """Resolve a spoken token to its owner.

        Raises ``TokenNotFoundError`` or ``TokenExpiredError``; the token stays
        valid for repeated use until it expires or is invalidated.
        """

        normalized = normalize_token(token or "")
        if not normalized:
            logger.info("Voice token validation failed: empty token")
            raise TokenNotFoundError(token)
        if not normalized.isalpha():
            logger.info("Voice token validation failed: token %r is not a word", normalized)
            raise TokenNotFoundError(normalized)

        await self._ensure_ready()
        try:
            record = await self._read_and_reap(_blob_key(normalized))
        except TokenExpiredError:
            logger.info("Voice token validation failed: token %r expired", normalized)
            raise
        except BlobStoreError as exc:
            raise ServiceUnavailableError("Voice token store not available") from exc

        if record is None:
            logger.info("Voice token validation failed: token %r not found", normalized)
            raise TokenNotFoundError(normalized)

        logger.info("Voice token validated for user %s", record.user_email)
        return VoiceIdentity(user_id=record.user_id, user_email=record.user_email)

    async def get_active_token_for_user(self, user_id: str) -> Optional[ActiveToken]:
        """Return the user's live token, if any."""

        await self._ensure_ready()
        try:
            async with aclosing(self._scan_live_records()) as records:
                async for _key, record in records:
                    if record.user_id != user_id:
                        continue
                    remaining = (record.expires_at - self._clock()).total_seconds()
                    return ActiveToken(
                        token=record.token,
                        expires_at=record.expires_at,
                        remaining_seconds=max(0, math.floor(remaining)),
                    )
        except BlobStoreError as exc:
            raise ServiceUnavailableError("Voice token store not available") from exc
        return None

    async def invalidate_user_token(self, user_id: str) -> bool:
        """Delete the user's token; returns whether one was removed."""

        await self._ensure_ready()
        try:
            async with aclosing(self._scan_live_records()) as records:
                async for key, record in records:
                    if record.user_id != user_id:
                        continue
                    await self._store.delete(key)
                    logger.info("Voice token invalidated for user %s", record.user_email)
                    return True
        except BlobStoreError as exc:
            raise ServiceUnavailableError("Voice token store not available") from exc
        return False

    async def cleanup_expired_tokens(self) -> int:
        """Delete expired and unreadable records; returns how many were removed.

        A failure on one record is logged and the sweep moves on.
        """

        await self._ensure_ready()
        now = self._clock()
        cleaned = 0
        try:
            async for key in self._store.list_keys():
                try:
                    record = TokenRecord.from_bytes(await self._store.get(key))
                    if not record.is_expired(now):
                        continue
                except BlobNotFoundError:
                    continue
                except (MalformedRecordError, BlobStoreError) as exc:
                    logger.warning("Purging unreadable voice token blob %s: %s", key, exc)
                if await self._discard(key):
                    cleaned += 1
        except BlobStoreError as exc:
            raise ServiceUnavailableError("Voice token store not available") from exc

        if cleaned:
            logger.info("Cleaned up %d expired voice tokens", cleaned)
        return cleaned

    async def token_stats(self) -> TokenStats:
        """Count live tokens after sweeping dead ones."""

        await self.cleanup_expired_tokens()
        try:
            active = 0
            async for _key in self._store.list_keys():
                active += 1
        except BlobStoreError as exc:
            raise ServiceUnavailableError("Voice token store not available") from exc
        return TokenStats(active_tokens=active)
