"""
Off-chain auction metadata resolution through an IPFS gateway.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Metadata:
    title: str
    image: Optional[str] = None


class MetadataFetcher:
    """Resolves content identifiers to display metadata.

    Results are cached for the life of the process. Identifiers are content
    addressed, so a cached entry never goes stale. Failures are not cached.
    """

    def __init__(self, gateway: str, timeout: float = 5.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.gateway = gateway.rstrip('/')
        self.timeout = timeout
        self.cache: Dict[str, Metadata] = {}
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def resolve(self, identifier: Optional[str]) -> Optional[Metadata]:
        """Return {title, image} for an identifier, or None. Never raises."""
        if not identifier:
            return None

        cached = self.cache.get(identifier)
        if cached is not None:
            return cached

        url = f"{self.gateway}/{identifier}"
        try:
            session = self._get_session()
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with session.get(url, timeout=timeout) as response:
                if response.status != 200:
                    logger.warning(f"⚠️ Failed to fetch metadata for {identifier}: HTTP {response.status}")
                    return None
                document = await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Timed out after {self.timeout}s fetching metadata for {identifier}")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            logger.warning(f"⚠️ Error fetching metadata for {identifier}: {e}")
            return None

        if not isinstance(document, dict):
            logger.warning(f"⚠️ Metadata for {identifier} is not a JSON object")
            return None

        result = Metadata(
            title=document.get('name') or document.get('title') or 'Untitled',
            image=document.get('image') or document.get('image_url') or None,
        )
        self.cache[identifier] = result
        logger.info(f"✅ Fetched metadata for {identifier}: {result.title}")
        return result
