"""
Image generation providers.

Chain per outfit, in order:
1. TogetherImageProvider: FLUX-schnell with a KeyPool; quota errors rotate
   to the next key immediately.
2. PollinationsImageProvider: free URL-built images, verified with one GET.
3. build_placeholder(): deterministic SVG data URI (never fails).
"""

import base64
import re
from typing import Iterable, List, Optional, Protocol, Tuple
from urllib.parse import quote

import httpx

from config.constants import DEFAULT_PLACEHOLDER_CONFIG, FASHION_TERMS, PlaceholderConfig
from core.errors import ProviderError, ProviderFatalError, ProviderTransientError
from core.logging import get_logger
from core.utils import md5_hex, normalize_hex_list
from styling.key_pool import KeyPool
from styling.text_providers import is_retryable_message

logger = get_logger(__name__)

PLACEHOLDER_PREFIX = "data:image/svg+xml"

_PROMPT_SUFFIX = (
    "fashion product photograph, full body, soft studio lighting, clean background, "
    "high quality, detailed textures, no text, no logos, no watermarks"
)


class ImageProvider(Protocol):
    name: str

    @property
    def available(self) -> bool: ...

    async def generate(self, prompt: str, colors: List[str]) -> str: ...


def build_image_prompt(prompt: str, colors: Iterable[str]) -> str:
    """Outfit prompt plus palette and photography hints."""
    palette = [c for c in normalize_hex_list(colors) if c not in ("#000000", "#FFFFFF")][:4]
    parts = [prompt.strip()]
    if palette:
        parts.append(f"featuring colors: {', '.join(palette)}")
    parts.append(_PROMPT_SUFFIX)
    return ", ".join(p for p in parts if p)


# =============================================================================
# Placeholders
# =============================================================================

def _placeholder_label(prompt: str, config: PlaceholderConfig) -> str:
    lowered = (prompt or "").lower()
    for term in FASHION_TERMS:
        if re.search(rf"\b{re.escape(term)}\b", lowered):
            return term.capitalize()
    return config.default_label


def build_placeholder(
    prompt: str,
    colors: Iterable[str],
    config: PlaceholderConfig = DEFAULT_PLACEHOLDER_CONFIG,
) -> str:
    """
    Deterministic stand-in image: gradient of the first two palette colors
    with a fashion label, as an SVG data URI.
    """
    palette = normalize_hex_list(colors)
    primary = palette[0] if palette else f"#{config.primary_color}"
    secondary = palette[1] if len(palette) > 1 else f"#{config.secondary_color}"
    label = _placeholder_label(prompt, config)

    svg = (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{config.width}" height="{config.height}" '
        f'viewBox="0 0 {config.width} {config.height}">'
        '<defs><linearGradient id="g" x1="0" y1="0" x2="1" y2="1">'
        f'<stop offset="0%" stop-color="{primary}"/>'
        f'<stop offset="100%" stop-color="{secondary}"/>'
        '</linearGradient></defs>'
        f'<rect width="{config.width}" height="{config.height}" fill="url(#g)"/>'
        f'<text x="50%" y="50%" font-family="sans-serif" font-size="48" fill="#FFFFFF" '
        f'text-anchor="middle" dominant-baseline="middle">{label}</text>'
        '</svg>'
    )
    encoded = base64.b64encode(svg.encode("utf-8")).decode("ascii")
    return f"{PLACEHOLDER_PREFIX};base64,{encoded}"


def is_placeholder(url: Optional[str]) -> bool:
    return bool(url) and url.startswith(PLACEHOLDER_PREFIX)


# =============================================================================
# Together.ai
# =============================================================================

class TogetherImageProvider:
    """Keyed FLUX-schnell generation with per-key quota rotation."""

    name = "together"

    QUOTA_STATUSES = (402, 429)

    def __init__(
        self,
        key_pool: KeyPool,
        model: str,
        api_url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._key_pool = key_pool
        self._model = model
        self._api_url = api_url
        self._timeout = timeout_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @property
    def available(self) -> bool:
        return self._key_pool.has_available_keys()

    @property
    def key_pool(self) -> KeyPool:
        return self._key_pool

    def _payload(self, prompt: str, colors: List[str]) -> dict:
        return {
            "model": self._model,
            "prompt": build_image_prompt(prompt, colors),
            "width": 768,
            "height": 1024,
            "steps": 4,
            "n": 1,
            "response_format": "url",
        }

    async def generate(self, prompt: str, colors: List[str]) -> str:
        payload = self._payload(prompt, colors)

        while True:
            api_key = self._key_pool.get_next_available_key()
            if api_key is None:
                raise ProviderTransientError("Together quota exhausted on every key", self.name)

            try:
                resp = await self._client.post(
                    self._api_url,
                    headers={"Authorization": f"Bearer {api_key}"},
                    json=payload,
                    timeout=self._timeout,
                )
            except httpx.TimeoutException as e:
                raise ProviderTransientError(f"Together request timeout: {e}", self.name) from e
            except httpx.HTTPError as e:
                raise ProviderTransientError(
                    f"Together temporarily unavailable: {type(e).__name__}", self.name
                ) from e

            self._key_pool.increment_current_usage()

            if resp.status_code in self.QUOTA_STATUSES or (
                resp.status_code != 200 and "quota" in resp.text.lower()
            ):
                self._key_pool.mark_exhausted(api_key)
                logger.info(
                    "Image key exhausted, rotating",
                    provider=self.name,
                    status=resp.status_code,
                    pool=self._key_pool.summary_line(),
                )
                continue

            if resp.status_code != 200:
                message = f"Together HTTP {resp.status_code}: {resp.text[:200]}"
                if resp.status_code >= 500 or is_retryable_message(message):
                    raise ProviderTransientError(message, self.name)
                raise ProviderFatalError(message, self.name)

            data = (resp.json().get("data") or [{}])[0]
            if data.get("url"):
                return data["url"]
            if data.get("b64_json"):
                return f"data:image/png;base64,{data['b64_json']}"
            raise ProviderTransientError("Together returned no image", self.name)

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# Pollinations.ai
# =============================================================================

class PollinationsImageProvider:
    """Keyless provider; the image renders at the URL itself."""

    name = "pollinations"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 5.0,
        verify: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._verify = verify
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True)

    @property
    def available(self) -> bool:
        return True

    def build_url(self, prompt: str, colors: List[str]) -> str:
        full_prompt = build_image_prompt(prompt, colors)
        # seed derived from the prompt so identical outfits map to one URL
        seed = int(md5_hex(full_prompt)[:8], 16) % 1_000_000
        return (
            f"{self._base_url}/{quote(full_prompt, safe='')}"
            f"?width=768&height=1024&seed={seed}&nologo=true&enhance=true&model=flux"
        )

    async def generate(self, prompt: str, colors: List[str]) -> str:
        url = self.build_url(prompt, colors)
        if not self._verify:
            return url

        try:
            resp = await self._client.get(url, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"Pollinations request timeout: {e}", self.name) from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(
                f"Pollinations temporarily unavailable: {type(e).__name__}", self.name
            ) from e

        content_type = resp.headers.get("content-type", "").lower()
        head = resp.content[:64].lstrip().lower()
        if resp.status_code != 200:
            raise ProviderTransientError(f"Pollinations HTTP {resp.status_code}", self.name)
        if not content_type.startswith("image/") or head.startswith((b"<!doctype", b"<html")):
            raise ProviderFatalError(
                f"Pollinations returned non-image content ({content_type or 'unknown'})", self.name
            )
        return url

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# Chain
# =============================================================================

class ImageProviderChain:
    """
    Try providers in order; the placeholder is the terminal fallback.

    generate() never raises. It returns (url, provider_name) where
    provider_name is "placeholder" for the fallback.
    """

    def __init__(self, providers: List[ImageProvider]):
        self._providers = list(providers)

    @property
    def providers(self) -> List[ImageProvider]:
        return list(self._providers)

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self._providers]

    async def generate(self, prompt: str, colors: List[str]) -> Tuple[str, str]:
        for provider in self._providers:
            if not provider.available:
                continue
            try:
                return await provider.generate(prompt, colors), provider.name
            except ProviderError as e:
                logger.warning(
                    "Image provider failed, falling back",
                    provider=provider.name,
                    kind=e.kind,
                    error=e.message[:200],
                )
            except Exception as e:
                logger.warning(
                    "Image provider raised unexpectedly, falling back",
                    provider=provider.name,
                    error=str(e)[:200],
                )
        return build_placeholder(prompt, colors), "placeholder"

    async def aclose(self) -> None:
        for provider in self._providers:
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
