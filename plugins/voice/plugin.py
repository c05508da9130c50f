"""
Плагин `voice` — аутентификация по голосу.

Голос превращается в voiceprint внешним процессором; при входе новый
образец сравнивается с сохранённым, вход разрешён при
confidence >= min_confidence (по умолчанию 0.85).

Аудио передаётся в base64 (поле "sample" или "audio_data").
"""

import base64
import binascii
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import aiohttp
from pydantic import AliasChoices, Field

from authcore.base_plugin import BasePlugin, PluginMetadata
from authcore.errors import ConfigurationError, ProviderRejected, ValidationError
from authcore.logger_helper import info
from authcore.providers import AuthOutcome, AuthProvider, ProviderContext, ProviderKind
from authcore.user_service import Principal
from authcore.validation import CredentialsModel, parse_payload

AUTH_VOICEPRINTS_NAMESPACE = "auth_voiceprints"
DEFAULT_MIN_CONFIDENCE = 0.85


class VoiceProcessor(ABC):
    """Извлечение и сравнение voiceprint."""

    @abstractmethod
    async def extract(self, audio: bytes) -> str:
        """Вернуть voiceprint (строка, сохраняется как есть)."""

    @abstractmethod
    async def compare(self, stored: str, candidate: str) -> float:
        """Вернуть confidence 0..1."""

    async def close(self) -> None:
        pass


class HttpVoiceProcessor(VoiceProcessor):
    """
    Процессор поверх HTTP API.

    POST {endpoint}/process  {"audio": base64}             -> {"voiceprint": str}
    POST {endpoint}/compare  {"stored": str, "candidate": str} -> {"confidence": float}
    """

    def __init__(self, endpoint: str, session_factory: Optional[Callable[[], Any]] = None):
        self.endpoint = endpoint.rstrip("/")
        self._session_factory = session_factory or aiohttp.ClientSession
        self._session: Optional[Any] = None

    def _get_session(self) -> Any:
        if self._session is None:
            self._session = self._session_factory()
        return self._session

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        session = self._get_session()
        try:
            async with session.post(f"{self.endpoint}{path}", json=body) as resp:
                if resp.status != 200:
                    raise ProviderRejected(f"Voice processor returned HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ProviderRejected("Voice processor is unavailable") from e
        except ValueError as e:
            raise ProviderRejected("Voice processor response is not valid JSON") from e
        if not isinstance(data, dict):
            raise ProviderRejected("Voice processor response is not an object")
        return data

    async def extract(self, audio: bytes) -> str:
        data = await self._post("/process", {"audio": base64.b64encode(audio).decode("ascii")})
        voiceprint = data.get("voiceprint")
        if not isinstance(voiceprint, str) or not voiceprint:
            raise ProviderRejected("Voice processor returned no voiceprint")
        return voiceprint

    async def compare(self, stored: str, candidate: str) -> float:
        data = await self._post("/compare", {"stored": stored, "candidate": candidate})
        try:
            return float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            return 0.0

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


class VoiceCredentials(CredentialsModel):
    identifier: str = Field(min_length=1, validation_alias=AliasChoices("identifier", "email", "username"))
    sample: str = Field(min_length=1, validation_alias=AliasChoices("sample", "audio_data"))


def _decode_sample(sample: str) -> bytes:
    try:
        return base64.b64decode(sample, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("sample must be base64-encoded audio") from e


class VoiceProvider(AuthProvider):
    kind = ProviderKind.VOICE
    supports_registration = True

    def __init__(
        self,
        processor: Optional[VoiceProcessor] = None,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        store: Optional[Any] = None,
    ):
        if not 0.0 < min_confidence <= 1.0:
            raise ConfigurationError("min_confidence must be in (0, 1]")
        self.processor = processor
        self.min_confidence = min_confidence
        self.store = store

    def _require(self) -> tuple[VoiceProcessor, Any]:
        if self.processor is None or self.store is None:
            raise ConfigurationError("Voice provider is not configured")
        return self.processor, self.store

    async def authenticate(self, credentials: dict[str, Any], ctx: ProviderContext) -> AuthOutcome:
        data = parse_payload(VoiceCredentials, credentials)
        audio = _decode_sample(data.sample)
        processor, store = self._require()

        principal = await ctx.user_service.find_by_identifier(data.identifier)
        if principal is None:
            raise ProviderRejected()
        record = await store.get(AUTH_VOICEPRINTS_NAMESPACE, principal.id)
        if not record or not record.get("voiceprint"):
            raise ProviderRejected()

        candidate = await processor.extract(audio)
        confidence = await processor.compare(record["voiceprint"], candidate)
        if confidence < self.min_confidence:
            raise ProviderRejected()
        return AuthOutcome.success(principal, confidence=confidence)

    async def register(self, payload: dict[str, Any], ctx: ProviderContext) -> Principal:
        """Создать принципала и сохранить его voiceprint."""
        data = parse_payload(VoiceCredentials, payload)
        audio = _decode_sample(data.sample)
        processor, _ = self._require()
        voiceprint = await processor.extract(audio)
        principal = await ctx.user_service.create(data.identifier)
        await self._save(principal.id, voiceprint, ctx)
        return principal

    async def enroll(self, principal: Principal, sample: str, ctx: ProviderContext) -> None:
        """Привязать голос к существующему принципалу."""
        processor, _ = self._require()
        voiceprint = await processor.extract(_decode_sample(sample))
        await self._save(principal.id, voiceprint, ctx)

    async def _save(self, principal_id: str, voiceprint: str, ctx: ProviderContext) -> None:
        _, store = self._require()
        await store.set(
            AUTH_VOICEPRINTS_NAMESPACE,
            principal_id,
            {"voiceprint": voiceprint, "enrolled_at": ctx.token_service.now()},
        )
        await info(ctx.logger, "Voiceprint enrolled", component="voice", principal_id=principal_id)


class VoicePlugin(BasePlugin):
    """
    Провайдер `voice`.

    Args:
        processor: VoiceProcessor; по умолчанию HttpVoiceProcessor(endpoint)
        endpoint / min_confidence: опции или VOICE_ENDPOINT / VOICE_MIN_CONFIDENCE
    """

    def __init__(self, processor: Optional[VoiceProcessor] = None, **options: Any) -> None:
        super().__init__(**options)
        if processor is None:
            endpoint = self.get_env_config("ENDPOINT")
            if endpoint:
                processor = HttpVoiceProcessor(endpoint)
        raw_confidence = self.get_env_config("MIN_CONFIDENCE")
        try:
            min_confidence = float(raw_confidence) if raw_confidence is not None else DEFAULT_MIN_CONFIDENCE
        except ValueError as e:
            raise ConfigurationError(f"Invalid voice min_confidence: {raw_confidence!r}") from e
        self.provider = VoiceProvider(processor=processor, min_confidence=min_confidence)

    @property
    def metadata(self) -> PluginMetadata:
        return PluginMetadata(
            name="voice",
            version="0.1.0",
            description="Аутентификация по голосу",
            author="authcore",
        )

    async def on_load(self, engine: Optional[Any]) -> None:
        await super().on_load(engine)
        if engine is not None:
            self.provider.store = engine.storage

    def get_providers(self) -> list[AuthProvider]:
        return [self.provider]

    async def cleanup(self) -> None:
        if self.provider.processor is not None:
            await self.provider.processor.close()
