from __future__ import annotations

import base64
from collections import OrderedDict
from dataclasses import dataclass
from io import BytesIO
import logging
import mimetypes
import socket
import threading
from urllib.error import HTTPError, URLError
from urllib.parse import quote, unquote_to_bytes, urlencode, urljoin
from urllib.request import Request, urlopen

from django.conf import settings
from django.core.files.storage import default_storage
from PIL import Image, UnidentifiedImageError

try:
    import qrcode
except Exception:  # pragma: no cover - handled at runtime
    qrcode = None

logger = logging.getLogger(__name__)

FLAG_CODE_ALIASES = {"ar": "lb", "lb": "lb", "en": "gb"}
EMOJI_BY_CODE = {
    "lb": "🇱🇧",
    "ar": "🇱🇧",
    "fr": "🇫🇷",
    "en": "🇬🇧",
    "uk": "🇬🇧",
    "gb": "🇬🇧",
}
WHITE_FLAG = "🏳️"


@dataclass(frozen=True)
class LoadedImage:
    data: bytes
    mime_type: str

    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


def _sniff_image(data: bytes, fallback_mime: str = "") -> LoadedImage | None:
    if not data:
        return None
    try:
        with Image.open(BytesIO(data)) as image:
            image_format = (image.format or "").upper()
            image.verify()
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError):
        return None
    mime_type = Image.MIME.get(image_format) or fallback_mime or "image/png"
    return LoadedImage(data=data, mime_type=mime_type)


def decode_data_uri(source: str) -> LoadedImage | None:
    header, separator, payload = source.partition(",")
    if not separator or not header.startswith("data:"):
        return None
    meta = header[len("data:"):]
    mime_type = meta.split(";", 1)[0] or "application/octet-stream"
    try:
        if ";base64" in meta:
            data = base64.b64decode(payload, validate=False)
        else:
            data = unquote_to_bytes(payload)
    except ValueError:
        return None
    return _sniff_image(data, mime_type)


def emoji_for_language(code: str, emoji: str = "") -> str:
    if emoji and len(emoji) >= 2:
        return emoji
    return EMOJI_BY_CODE.get(str(code or "").strip().lower(), WHITE_FLAG)


def flag_code_for_language(code: str) -> str:
    normalized = str(code or "").strip().lower()
    return FLAG_CODE_ALIASES.get(normalized, normalized)


def emoji_icon_url(emoji: str) -> str:
    base_url = str(settings.GRADEBOOK_EMOJI_CDN_URL).rstrip("/") + "/"
    return f"{base_url}{quote(emoji, safe='')}?style=apple"


def flag_icon_url(code: str) -> str:
    base_url = str(settings.GRADEBOOK_FLAG_CDN_URL).rstrip("/") + "/"
    return f"{base_url}{quote(flag_code_for_language(code), safe='')}.png"


def qr_service_url(payload: str, *, width: int, height: int) -> str:
    query = urlencode({"size": f"{width}x{height}", "data": payload})
    return f"{settings.GRADEBOOK_QR_SERVICE_URL}?{query}"


class ImageLoader:
    """Resolves image sources to bytes with a bounded, thread-safe URL cache.

    Failed fetches are logged and never cached, so a later render retries.
    """

    def __init__(self, *, max_entries: int | None = None, timeout: float | None = None):
        self.max_entries = max(1, int(max_entries or settings.GRADEBOOK_IMAGE_CACHE_SIZE))
        self.timeout = max(1, int(timeout or settings.GRADEBOOK_REMOTE_FETCH_TIMEOUT))
        self._cache: OrderedDict[str, LoadedImage] = OrderedDict()
        self._lock = threading.Lock()

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def _cache_get(self, key: str) -> LoadedImage | None:
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
            return cached

    def _cache_put(self, key: str, image: LoadedImage) -> None:
        with self._lock:
            self._cache[key] = image
            self._cache.move_to_end(key)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)

    def fetch_remote(self, url: str) -> LoadedImage | None:
        cached = self._cache_get(url)
        if cached is not None:
            return cached

        request = Request(url=url, method="GET")
        request.add_header("Accept", "image/*")
        request.add_header("User-Agent", "carnet-renderer/1.0")
        try:
            with urlopen(request, timeout=self.timeout) as response:
                data = response.read()
                content_type = str(response.headers.get("Content-Type") or "").split(";", 1)[0]
        except HTTPError as exc:
            logger.warning("Image fetch failed for %s: HTTP %s", url, exc.code)
            return None
        except (URLError, TimeoutError, socket.timeout, ValueError) as exc:
            logger.warning("Image fetch failed for %s: %s", url, getattr(exc, "reason", exc))
            return None

        image = _sniff_image(data, content_type or mimetypes.guess_type(url)[0] or "")
        if image is None:
            logger.warning("Image fetch for %s returned unreadable data.", url)
            return None
        self._cache_put(url, image)
        return image

    def _storage_name(self, path: str) -> str:
        media_url = str(settings.MEDIA_URL or "/media/")
        if media_url.startswith("/") and path.startswith(media_url):
            return path[len(media_url):]
        return path.lstrip("/")

    def load_local(self, path: str) -> LoadedImage | None:
        storage_name = unquote_to_bytes(self._storage_name(path.split("?", 1)[0])).decode("utf-8", "replace")
        if not storage_name:
            return None
        try:
            if not default_storage.exists(storage_name):
                return None
            with default_storage.open(storage_name, "rb") as image_stream:
                data = image_stream.read()
        except (OSError, ValueError) as exc:
            logger.warning("Local media read failed for %s: %s", path, exc)
            return None
        return _sniff_image(data, mimetypes.guess_type(storage_name)[0] or "")

    def is_local_media(self, source: str) -> bool:
        return any(source.startswith(prefix) for prefix in settings.GRADEBOOK_LOCAL_MEDIA_PREFIXES)

    def load(self, source: str) -> LoadedImage | None:
        """Resolve a data URI, absolute URL or server-relative path."""
        normalized = str(source or "").strip()
        if not normalized:
            return None
        if normalized.startswith("data:"):
            return decode_data_uri(normalized)
        if normalized.startswith("http://") or normalized.startswith("https://"):
            return self.fetch_remote(normalized)
        if normalized.startswith("/"):
            if self.is_local_media(normalized):
                local = self.load_local(normalized)
                if local is not None:
                    return local
            base_url = str(settings.GRADEBOOK_PUBLIC_BASE_URL or "").strip()
            if base_url:
                return self.fetch_remote(urljoin(base_url.rstrip("/") + "/", normalized.lstrip("/")))
            return None
        logger.warning("Unsupported image source skipped: %s", normalized[:80])
        return None

    def qr_code(self, payload: str, *, width: int, height: int) -> LoadedImage | None:
        if not payload:
            return None
        if settings.GRADEBOOK_QR_PROVIDER == "local" and qrcode is not None:
            qr = qrcode.QRCode(box_size=6, border=1)
            qr.add_data(payload)
            qr.make(fit=True)
            image = qr.make_image(fill_color="black", back_color="white")
            buffer = BytesIO()
            image.save(buffer, format="PNG")
            return LoadedImage(data=buffer.getvalue(), mime_type="image/png")
        return self.fetch_remote(qr_service_url(payload, width=width, height=height))

    def emoji_icon(self, code: str, emoji: str = "") -> LoadedImage | None:
        return self.fetch_remote(emoji_icon_url(emoji_for_language(code, emoji)))

    def flag_icon(self, code: str) -> LoadedImage | None:
        if not code:
            return None
        return self.fetch_remote(flag_icon_url(code))


_default_loader: ImageLoader | None = None
_default_loader_lock = threading.Lock()


def get_image_loader() -> ImageLoader:
    global _default_loader
    with _default_loader_lock:
        if _default_loader is None:
            _default_loader = ImageLoader()
        return _default_loader
