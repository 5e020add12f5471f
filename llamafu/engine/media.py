"""Multimodal input pipeline.

Normalizes image/audio inputs (file, base64, bytes, url, raw samples) into
decoded media, then into projector embeddings with a content-keyed cache.

Decoding (file reads, HTTP fetches, PIL/wave decoding, resampling) runs
outside the session lock. Only the projector step goes through the session's
exclusive section.
"""

from __future__ import annotations

import base64 as _b64
import binascii
import hashlib
import io
import logging
import os
import threading
import time
import wave
from contextlib import AbstractContextManager, nullcontext
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Literal, Sequence
from urllib.parse import urlparse

import numpy as np

from .errors import (
    AudioProcessError,
    ErrorKind,
    ImageProcessError,
    InvalidMediaFormatError,
    LlamafuError,
    MultimodalNotSupportedError,
    map_backend_error,
)
from .types import MediaConfig

if TYPE_CHECKING:
    import torch

    from .backends.base import BaseBackend, ModelMetadata

logger = logging.getLogger(__name__)

MediaType = Literal["image", "audio"]
SourceKind = Literal["file", "base64", "bytes", "url", "samples"]

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp", ".tif", ".tiff"})
AUDIO_EXTENSIONS = frozenset({".wav", ".wave", ".mp3", ".flac", ".ogg", ".oga", ".opus", ".m4a", ".aac"})


# =============================================================================
# Format helpers
# =============================================================================


def media_type_from_path(path: str) -> MediaType | None:
    """Infer the media type from a file extension (or URL path)."""
    ext = os.path.splitext(urlparse(path).path if "://" in path else path)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    return None


def detect_format(data: bytes) -> tuple[MediaType, str] | None:
    """Detect (media type, format name) from magic bytes."""
    head = data[:16]
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image", "png"
    if head.startswith(b"\xff\xd8\xff"):
        return "image", "jpeg"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "image", "gif"
    if head.startswith(b"BM"):
        return "image", "bmp"
    if head.startswith((b"II*\x00", b"MM\x00*")):
        return "image", "tiff"
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image", "webp"
    if head.startswith(b"RIFF") and head[8:12] == b"WAVE":
        return "audio", "wav"
    if head.startswith(b"fLaC"):
        return "audio", "flac"
    if head.startswith(b"OggS"):
        return "audio", "ogg"
    if head.startswith(b"ID3") or head[:2] in (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2"):
        return "audio", "mp3"
    return None


def encode_base64(data: bytes) -> str:
    return _b64.b64encode(data).decode("ascii")


def decode_base64(text: str) -> bytes:
    """Decode base64, accepting `data:<mime>;base64,` URLs."""
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    try:
        return _b64.b64decode(text.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidMediaFormatError(f"Invalid base64 payload: {exc}") from exc


def downmix_to_mono(samples: np.ndarray, channels: int) -> np.ndarray:
    """Average interleaved channels into a mono float32 signal."""
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    if channels <= 1:
        return samples
    usable = (samples.size // channels) * channels
    return samples[:usable].reshape(-1, channels).mean(axis=1).astype(np.float32)


def resample_linear(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Linear-interpolation resampling of a mono signal."""
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    if src_rate == dst_rate or samples.size == 0:
        return samples
    n_out = max(1, int(round(samples.size * dst_rate / src_rate)))
    src_t = np.arange(samples.size, dtype=np.float64) / src_rate
    dst_t = np.arange(n_out, dtype=np.float64) / dst_rate
    return np.interp(dst_t, src_t, samples).astype(np.float32)


# =============================================================================
# Inputs and decoded media
# =============================================================================


@dataclass(frozen=True)
class MediaInput:
    """An image or audio input. Immutable; holds no native resources.

    `payload` is a path (file), a URL (url), base64 text (base64), encoded
    bytes (bytes) or little-endian float32 PCM bytes (samples).
    """

    media_type: MediaType
    source: SourceKind
    payload: str | bytes
    caption: str | None = None
    sample_rate: int | None = None
    channels: int | None = None

    @property
    def duration_s(self) -> float | None:
        if self.source != "samples" or not self.sample_rate:
            return None
        n = len(self.payload) // 4 // max(1, self.channels or 1)
        return n / self.sample_rate

    # -- factories ------------------------------------------------------------

    @classmethod
    def file(cls, path: str | os.PathLike, *, media_type: MediaType | None = None, caption: str | None = None) -> "MediaInput":
        path = os.fspath(path)
        media_type = media_type or media_type_from_path(path)
        if media_type is None:
            raise InvalidMediaFormatError(f"Cannot infer media type from file extension: {path}", path=path)
        return cls(media_type, "file", path, caption=caption)

    @classmethod
    def image(cls, source: str | os.PathLike | bytes, *, caption: str | None = None) -> "MediaInput":
        if isinstance(source, (bytes, bytearray)):
            return cls("image", "bytes", bytes(source), caption=caption)
        return cls.file(source, media_type="image", caption=caption)

    @classmethod
    def audio(cls, source: str | os.PathLike | bytes, *, caption: str | None = None) -> "MediaInput":
        if isinstance(source, (bytes, bytearray)):
            return cls("audio", "bytes", bytes(source), caption=caption)
        return cls.file(source, media_type="audio", caption=caption)

    @classmethod
    def base64(cls, data: str, *, media_type: MediaType | None = None, caption: str | None = None) -> "MediaInput":
        if media_type is None:
            if data.startswith("data:image/"):
                media_type = "image"
            elif data.startswith("data:audio/"):
                media_type = "audio"
            else:
                detected = detect_format(decode_base64(data))
                if detected is None:
                    raise InvalidMediaFormatError("Cannot infer media type of base64 payload.")
                media_type = detected[0]
        return cls(media_type, "base64", data, caption=caption)

    @classmethod
    def bytes(cls, data: bytes, *, media_type: MediaType | None = None, caption: str | None = None) -> "MediaInput":
        data = bytes(data)
        if media_type is None:
            detected = detect_format(data)
            if detected is None:
                raise InvalidMediaFormatError("Cannot infer media type from content.")
            media_type = detected[0]
        return cls(media_type, "bytes", data, caption=caption)

    @classmethod
    def url(cls, url: str, *, media_type: MediaType | None = None, caption: str | None = None) -> "MediaInput":
        scheme = urlparse(url).scheme
        if scheme not in ("http", "https"):
            raise InvalidMediaFormatError(f"Unsupported URL scheme: {scheme or '(none)'}", url=url)
        media_type = media_type or media_type_from_path(url)
        if media_type is None:
            raise InvalidMediaFormatError(f"Cannot infer media type from URL: {url}", url=url)
        return cls(media_type, "url", url, caption=caption)

    @classmethod
    def samples(
        cls,
        samples: Sequence[float] | np.ndarray,
        *,
        sample_rate: int,
        channels: int = 1,
        caption: str | None = None,
    ) -> "MediaInput":
        """Raw interleaved PCM samples in [-1, 1]."""
        if sample_rate <= 0 or channels <= 0:
            raise InvalidMediaFormatError("'sample_rate' and 'channels' must be > 0.")
        data = np.asarray(samples, dtype="<f4").reshape(-1).tobytes()
        return cls("audio", "samples", data, caption=caption, sample_rate=sample_rate, channels=channels)


@dataclass(frozen=True)
class DecodedMedia:
    """Media decoded into the projector's input domain.

    Images: RGB uint8 bytes (height x width x 3).
    Audio: mono float32 samples at `sample_rate`.
    """

    media_type: MediaType
    data: bytes
    width: int | None = None
    height: int | None = None
    sample_rate: int | None = None
    caption: str | None = None

    @property
    def fingerprint(self) -> str:
        h = hashlib.sha256()
        h.update(self.media_type.encode())
        h.update(self.data)
        h.update(f"|{self.width}x{self.height}@{self.sample_rate}".encode())
        return h.hexdigest()

    def array(self) -> np.ndarray:
        if self.media_type == "image":
            return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, 3)
        return np.frombuffer(self.data, dtype=np.float32)

    def to_pil(self) -> Any:
        from PIL import Image

        return Image.fromarray(self.array())


@dataclass(frozen=True)
class MediaEmbedding:
    embedding: "torch.Tensor"  # (token_count, embedding_size)
    token_count: int
    processing_ms: float
    cache_hit: bool
    fingerprint: str
    media_type: MediaType = "image"


@dataclass(frozen=True)
class VisionCacheEntry:
    embedding: "torch.Tensor"
    token_count: int
    processing_ms: float


class VisionCache:
    """Content-keyed embedding cache. Evicted only by `clear()`."""

    def __init__(self) -> None:
        self._entries: dict[str, VisionCacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: str) -> VisionCacheEntry | None:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self.misses += 1
            else:
                self.hits += 1
            return entry

    def put(self, fingerprint: str, entry: VisionCacheEntry) -> None:
        with self._lock:
            self._entries[fingerprint] = entry

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            return n

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries


# =============================================================================
# Decoding
# =============================================================================


def _process_error(media_type: MediaType) -> type:
    return ImageProcessError if media_type == "image" else AudioProcessError


def _read_payload(media: MediaInput, config: MediaConfig) -> bytes:
    err = _process_error(media.media_type)
    if media.source == "file":
        path = str(media.payload)
        if not os.path.isfile(path):
            raise err(f"Media file not found: {path}", path=path, media_type=media.media_type)
        size = os.path.getsize(path)
        if size > config.max_media_bytes:
            raise InvalidMediaFormatError("Media file too large.", path=path, size=size, limit=config.max_media_bytes)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as exc:
            raise err(f"Failed to read media file: {exc}", path=path) from exc

    if media.source == "base64":
        data = decode_base64(str(media.payload))
    elif media.source == "url":
        data = _fetch_url(str(media.payload), config, media.media_type)
    else:
        data = bytes(media.payload)  # type: ignore[arg-type]

    if len(data) > config.max_media_bytes:
        raise InvalidMediaFormatError("Media payload too large.", size=len(data), limit=config.max_media_bytes)
    return data


def _fetch_url(url: str, config: MediaConfig, media_type: MediaType) -> bytes:
    import httpx

    err = _process_error(media_type)
    try:
        with httpx.Client(timeout=config.url_timeout_s, follow_redirects=True) as client:
            resp = client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as exc:
        raise err(f"Failed to fetch media URL: {exc}", url=url, media_type=media_type) from exc


def decode_image(data: bytes, *, target_size: tuple[int, int] | None = None, auto_resize: bool = True) -> DecodedMedia:
    from PIL import Image, UnidentifiedImageError

    detected = detect_format(data)
    if detected is not None and detected[0] != "image":
        raise InvalidMediaFormatError(f"Expected an image, got {detected[1]} data.", media_type="image")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGB")
            if auto_resize and target_size is not None and img.size != tuple(target_size):
                img = img.resize(tuple(target_size), Image.BICUBIC)
            width, height = img.size
            raw = img.tobytes()
    except UnidentifiedImageError as exc:
        raise InvalidMediaFormatError(f"Unrecognized image format: {exc}", media_type="image") from exc
    except (OSError, ValueError) as exc:
        raise ImageProcessError(f"Failed to decode image: {exc}", media_type="image") from exc
    return DecodedMedia("image", raw, width=width, height=height)


def _decode_wav(data: bytes) -> tuple[np.ndarray, int, int]:
    try:
        with wave.open(io.BytesIO(data), "rb") as wav:
            channels = wav.getnchannels()
            rate = wav.getframerate()
            width = wav.getsampwidth()
            frames = wav.readframes(wav.getnframes())
    except (wave.Error, EOFError) as exc:
        raise AudioProcessError(f"Failed to decode WAV audio: {exc}", media_type="audio") from exc

    if width == 1:
        samples = (np.frombuffer(frames, dtype=np.uint8).astype(np.float32) - 128.0) / 128.0
    elif width == 2:
        samples = np.frombuffer(frames, dtype="<i2").astype(np.float32) / 32768.0
    elif width == 4:
        samples = np.frombuffer(frames, dtype="<i4").astype(np.float32) / 2147483648.0
    else:
        raise AudioProcessError(f"Unsupported WAV sample width: {width * 8} bits.", media_type="audio")
    return samples, rate, channels


def decode_audio(
    data: bytes,
    *,
    target_rate: int,
    auto_resample: bool = True,
    sample_rate: int | None = None,
    channels: int | None = None,
) -> DecodedMedia:
    """Decode WAV bytes (or raw float32 PCM when `sample_rate` is given) to mono float32."""
    if sample_rate is not None:
        samples = np.frombuffer(data, dtype="<f4").astype(np.float32)
        rate, n_channels = sample_rate, channels or 1
    else:
        detected = detect_format(data)
        if detected is None:
            raise InvalidMediaFormatError("Unrecognized audio format.", media_type="audio")
        if detected[0] != "audio":
            raise InvalidMediaFormatError(f"Expected audio, got {detected[1]} data.", media_type="audio")
        if detected[1] != "wav":
            raise AudioProcessError(f"Unsupported audio container: {detected[1]} (WAV or raw samples only).", media_type="audio")
        samples, rate, n_channels = _decode_wav(data)

    mono = downmix_to_mono(samples, n_channels)
    if rate != target_rate:
        if not auto_resample:
            raise AudioProcessError(
                f"Audio sample rate {rate} does not match required {target_rate}.",
                media_type="audio",
                sample_rate=rate,
            )
        mono = resample_linear(mono, rate, target_rate)
        rate = target_rate
    if mono.size == 0:
        raise AudioProcessError("Audio contains no samples.", media_type="audio")
    return DecodedMedia("audio", mono.astype(np.float32).tobytes(), sample_rate=rate)


# =============================================================================
# Pipeline
# =============================================================================


class MediaPipeline:
    """Decode media and turn it into projector embeddings, with caching."""

    def __init__(
        self,
        backend: "BaseBackend",
        *,
        handle: Callable[[], Any],
        metadata: "ModelMetadata",
        config: MediaConfig,
        exclusive: Callable[[str], AbstractContextManager] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._backend = backend
        self._handle = handle
        self._metadata = metadata
        self._config = config
        self._exclusive = exclusive or (lambda _op: nullcontext())
        self._logger = logger or logging.getLogger(__name__)
        self.cache = VisionCache()

    @property
    def config(self) -> MediaConfig:
        return self._config

    def supports(self, media_type: MediaType) -> bool:
        if not self._metadata.multimodal:
            return False
        if media_type == "image":
            return self._metadata.supports_image
        return self._metadata.supports_audio

    def ensure_supported(self, media_type: MediaType) -> None:
        if not self.supports(media_type):
            raise MultimodalNotSupportedError(
                f"Model has no projector for {media_type} input.",
                media_type=media_type,
            )

    def decode(self, media: MediaInput) -> DecodedMedia:
        """Decode `media` into projector-ready form. Touches no native state."""
        self.ensure_supported(media.media_type)
        data = _read_payload(media, self._config)
        if media.media_type == "image":
            decoded = decode_image(
                data,
                target_size=self._metadata.image_size,
                auto_resize=self._config.auto_resize,
            )
        else:
            decoded = decode_audio(
                data,
                target_rate=self._metadata.audio_sample_rate or self._config.audio_sample_rate,
                auto_resample=self._config.auto_resample,
                sample_rate=media.sample_rate if media.source == "samples" else None,
                channels=media.channels,
            )
        if media.caption:
            decoded = DecodedMedia(
                decoded.media_type,
                decoded.data,
                width=decoded.width,
                height=decoded.height,
                sample_rate=decoded.sample_rate,
                caption=media.caption,
            )
        return decoded

    def process(self, media: MediaInput, *, use_cache: bool | None = None) -> MediaEmbedding:
        """Decode and embed `media`. The projector step takes the session lock."""
        decoded = self.decode(media)
        with self._exclusive("media"):
            return self.embed(decoded, use_cache=use_cache)

    def embed(self, decoded: DecodedMedia, *, use_cache: bool | None = None) -> MediaEmbedding:
        """Run the projector on decoded media. Caller must hold the session lock."""
        use_cache = self._config.use_cache if use_cache is None else use_cache
        fingerprint = decoded.fingerprint

        if use_cache:
            entry = self.cache.get(fingerprint)
            if entry is not None:
                self._logger.debug("Media cache hit: %s (%d tokens)", fingerprint[:12], entry.token_count)
                return MediaEmbedding(
                    embedding=entry.embedding,
                    token_count=entry.token_count,
                    processing_ms=0.0,
                    cache_hit=True,
                    fingerprint=fingerprint,
                    media_type=decoded.media_type,
                )

        t0 = time.perf_counter()
        default = ErrorKind.IMAGE_PROCESS_FAILED if decoded.media_type == "image" else ErrorKind.AUDIO_PROCESS_FAILED
        try:
            embedding = self._backend.embed_media(self._handle(), decoded)
        except LlamafuError:
            raise
        except Exception as exc:
            raise map_backend_error(exc, default=default, media_type=decoded.media_type) from exc
        processing_ms = (time.perf_counter() - t0) * 1000.0

        if embedding.dim() != 2:
            raise _process_error(decoded.media_type)(
                f"Projector returned embeddings of shape {tuple(embedding.shape)}; expected 2-D.",
                media_type=decoded.media_type,
            )
        token_count = int(embedding.shape[0])
        self._logger.debug(
            "Embedded %s: %d tokens in %.1f ms", decoded.media_type, token_count, processing_ms
        )
        if use_cache:
            self.cache.put(fingerprint, VisionCacheEntry(embedding, token_count, processing_ms))
        return MediaEmbedding(
            embedding=embedding,
            token_count=token_count,
            processing_ms=processing_ms,
            cache_hit=False,
            fingerprint=fingerprint,
            media_type=decoded.media_type,
        )

    def clear_vision_cache(self) -> int:
        n = self.cache.clear()
        self._logger.debug("Cleared media cache (%d entries)", n)
        return n
