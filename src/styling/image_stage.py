"""
Bounded-concurrency image stage.

One image per outfit, all outfits in parallel, under a single wall-clock
budget:

1. Each outfit first checks the image cache (prompt + palette key).
2. Misses go through the provider chain; every outfit runs concurrently.
3. The whole set races the budget timer. Slots that have not settled when
   it fires get a deterministic placeholder. In-flight work is left to
   finish in the background and its result is discarded.
4. Generated (non-placeholder) images are written to the cache in the
   background.

Output length and order always match the input.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from core.errors import ImageGenerationTimeout
from core.logging import LoggerMixin
from core.utils import spawn_background
from styling.caches import ImageCache
from styling.image_providers import ImageProviderChain, build_placeholder, is_placeholder
from styling.models import CandidateOutfit, ImageSource


@dataclass
class ImageResult:
    url: str
    source: ImageSource
    provider: Optional[str] = None


class ImageStage(LoggerMixin):
    """
    Usage:
        stage = ImageStage(chain, image_cache, budget_seconds=12.0)
        images = await stage.run(outfits)   # len(images) == len(outfits)
    """

    def __init__(
        self,
        chain: ImageProviderChain,
        cache: Optional[ImageCache] = None,
        budget_seconds: float = 12.0,
    ):
        self._chain = chain
        self._cache = cache
        self.budget_seconds = budget_seconds

    @property
    def chain(self) -> ImageProviderChain:
        return self._chain

    async def _resolve(self, outfit: CandidateOutfit) -> ImageResult:
        prompt = outfit.effective_image_prompt
        colors = list(outfit.color_palette)

        if self._cache is not None:
            cached = await self._cache.get_image(prompt, colors)
            if cached:
                return ImageResult(cached, ImageSource.CACHE, "cache")

        url, provider = await self._chain.generate(prompt, colors)
        if is_placeholder(url):
            return ImageResult(url, ImageSource.PLACEHOLDER, provider)

        if self._cache is not None:
            spawn_background(self._cache.set_image(prompt, colors, url), name="image_cache_write")
        return ImageResult(url, ImageSource.GENERATED, provider)

    @staticmethod
    def _placeholder(outfit: CandidateOutfit) -> ImageResult:
        return ImageResult(
            build_placeholder(outfit.effective_image_prompt, outfit.color_palette),
            ImageSource.PLACEHOLDER,
            "placeholder",
        )

    async def run(self, outfits: Sequence[CandidateOutfit]) -> List[ImageResult]:
        if not outfits:
            return []

        start = time.perf_counter()
        tasks = [asyncio.ensure_future(self._resolve(outfit)) for outfit in outfits]
        done, pending = await asyncio.wait(tasks, timeout=self.budget_seconds)

        results: List[ImageResult] = []
        for index, (outfit, task) in enumerate(zip(outfits, tasks)):
            if task in done and not task.cancelled() and task.exception() is None:
                results.append(task.result())
                continue

            if task in done:
                error = task.exception() if not task.cancelled() else None
                self.logger.warning("Image slot failed", index=index, error=str(error))
            else:
                timeout = ImageGenerationTimeout(f"slot {index} exceeded {self.budget_seconds}s")
                self.logger.warning("Image slot timed out", index=index, error=str(timeout))
                # not cancelled; the result is discarded when it lands
                spawn_background(task, name="late_image")
            results.append(self._placeholder(outfit))

        self.logger.info(
            "Image stage complete",
            outfits=len(outfits),
            cached=sum(1 for r in results if r.source == ImageSource.CACHE),
            generated=sum(1 for r in results if r.source == ImageSource.GENERATED),
            placeholders=sum(1 for r in results if r.source == ImageSource.PLACEHOLDER),
            timed_out=len(pending),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return results
