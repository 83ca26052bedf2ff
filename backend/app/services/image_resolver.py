"""
Image Resolver

Turns Square image IDs into URLs that actually load. Stored-file URLs on Square's
S3 buckets are probed against each storage region in turn; the first one that
answers wins. Failures are per image and never fail the item.
"""
from typing import Callable, List, Optional, Sequence, Tuple
import asyncio
import logging
import re

import httpx

from app.config import settings
from app.services.catalog_snapshot import CatalogSnapshot

logger = logging.getLogger(__name__)

# e.g. https://items-images-production.s3.us-west-2.amazonaws.com/files/<id>/original.jpeg
STORED_FILE_URL = re.compile(
    r"^https?://(?P<bucket>items-images|square-catalog)-(?:sandbox|production)"
    r"\.s3(?P<region>[.-][a-z0-9-]+)?\.amazonaws\.com/(?P<path>files/.+)$"
)

CandidateBuilder = Callable[[re.Match], str]


def _environment_builder(environment: str) -> CandidateBuilder:
    def build(match: re.Match) -> str:
        return (
            f"https://{match.group('bucket')}-{environment}.s3{match.group('region') or ''}"
            f".amazonaws.com/{match.group('path')}"
        )
    return build


# Fallback regions, tried in order after the URL as Square returned it
CANDIDATE_BUILDERS: Tuple[Tuple[str, CandidateBuilder], ...] = (
    ("sandbox", _environment_builder("sandbox")),
    ("production", _environment_builder("production")),
)


def is_stored_file_url(url: str) -> bool:
    return STORED_FILE_URL.match(url) is not None


def candidate_urls(url: str) -> List[str]:
    """All storage variants worth probing for url, the original first"""
    match = STORED_FILE_URL.match(url)
    if match is None:
        return [url]
    candidates = [url]
    for _, build in CANDIDATE_BUILDERS:
        candidate = build(match)
        if candidate not in candidates:
            candidates.append(candidate)
    return candidates


async def probe_url(client: httpx.AsyncClient, url: str) -> bool:
    """HEAD the URL; any 2xx means reachable"""
    try:
        response = await client.head(url)
    except httpx.HTTPError as e:
        logger.debug("Probe of %s failed: %s", url, e)
        return False
    return response.is_success


class ImageResolver:
    """Resolve image IDs for one item against a snapshot, with live fallback lookups"""

    def __init__(
        self,
        square_client,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        batch_size: Optional[int] = None,
        batch_delay_ms: Optional[int] = None,
        probe_timeout: Optional[float] = None,
    ):
        self.square_client = square_client
        self.transport = transport
        self.batch_size = batch_size or settings.IMAGE_BATCH_SIZE
        self.batch_delay = (batch_delay_ms if batch_delay_ms is not None else settings.IMAGE_BATCH_DELAY_MS) / 1000
        self.probe_timeout = probe_timeout or settings.IMAGE_PROBE_TIMEOUT_SECONDS

    async def lookup_url(self, image_id: str, snapshot: CatalogSnapshot) -> Optional[str]:
        """Inline URL from the snapshot, else a direct catalog lookup"""
        url = snapshot.image_url(image_id)
        if url:
            return url

        logger.debug("Image %s not in related objects, fetching directly", image_id)
        image = await self.square_client.retrieve_catalog_object(image_id)
        if not image:
            return None
        return (image.get("image_data") or {}).get("url")

    async def verify(self, client: httpx.AsyncClient, url: str) -> Optional[str]:
        """First reachable storage variant of url, or None. Non-stored URLs pass through."""
        if not is_stored_file_url(url):
            return url

        for candidate in candidate_urls(url):
            if await probe_url(client, candidate):
                return candidate

        logger.warning("Image unreachable in every storage region: %s", url)
        return None

    async def _resolve_one(self, client: httpx.AsyncClient, image_id: str, snapshot: CatalogSnapshot) -> Optional[str]:
        try:
            url = await self.lookup_url(image_id, snapshot)
            if not url:
                logger.warning("No URL found for image %s", image_id)
                return None
            return await self.verify(client, url)
        except Exception as e:
            logger.warning("Failed to resolve image %s: %s", image_id, e)
            return None

    async def resolve(self, image_ids: Sequence[str], snapshot: CatalogSnapshot) -> List[str]:
        """
        Resolve image IDs to reachable URLs

        Args:
            image_ids: Square image IDs in display order
            snapshot: Current catalog snapshot

        Returns:
            Reachable URLs in the same order, unresolvable IDs dropped
        """
        if not image_ids:
            return []

        resolved: List[Optional[str]] = []
        async with httpx.AsyncClient(
            timeout=self.probe_timeout,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            for start in range(0, len(image_ids), self.batch_size):
                if start and self.batch_delay:
                    await asyncio.sleep(self.batch_delay)
                batch = image_ids[start:start + self.batch_size]
                resolved.extend(
                    await asyncio.gather(*(self._resolve_one(client, image_id, snapshot) for image_id in batch))
                )

        urls = [url for url in resolved if url]
        # Same file referenced twice keeps its first position
        return list(dict.fromkeys(urls))
