"""
Registry Client for Docker Image Update Detection

Picks the registry provider for an image repository, asks it for the digest
currently published under a tag, and falls back to GitHub release tags when
a repository mapping is known and the registry cannot answer.

Token and digest caches belong to the RegistryClient instance; upgrades
invalidate single repo:tag entries after a successful pull.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from config.settings import RegistryConfig
from updates.errors import RateLimitExceeded
from updates.registry_providers import (
    DockerHubProvider,
    GCRProvider,
    GHCRProvider,
    GitHubReleasesProvider,
    GitLabProvider,
    RegistryProvider,
)
from updates.types import LatestImageInfo

logger = logging.getLogger(__name__)


class RegistryCache:
    """Simple in-memory cache with TTL for registry responses"""

    MAX_CACHE_SIZE = 1000  # Prevent unbounded growth

    def __init__(self, ttl_seconds: int = 120):
        self._cache: Dict[str, Tuple[Any, datetime]] = {}
        self._ttl = timedelta(seconds=ttl_seconds)

    def get(self, key: str) -> Optional[Any]:
        """Get cached value if not expired"""
        if key in self._cache:
            value, timestamp = self._cache[key]
            if datetime.now(timezone.utc) - timestamp < self._ttl:
                return value
            del self._cache[key]
        return None

    def set(self, key: str, value: Any):
        """Set cache value with current timestamp"""
        if len(self._cache) >= self.MAX_CACHE_SIZE:
            self._cleanup_expired()

            # Still full after TTL cleanup: drop the oldest 10%
            if len(self._cache) >= self.MAX_CACHE_SIZE:
                sorted_entries = sorted(self._cache.items(), key=lambda x: x[1][1])
                keys_to_remove = [k for k, _ in sorted_entries[:self.MAX_CACHE_SIZE // 10]]
                for k in keys_to_remove:
                    del self._cache[k]
                logger.warning(f"Registry cache exceeded limit, removed {len(keys_to_remove)} oldest entries")

        self._cache[key] = (value, datetime.now(timezone.utc))

    def invalidate(self, key: str) -> bool:
        """Remove a single entry; returns True if it existed"""
        return self._cache.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix"""
        keys_to_remove = [k for k in self._cache if k.startswith(prefix)]
        for k in keys_to_remove:
            del self._cache[k]
        return len(keys_to_remove)

    def _cleanup_expired(self):
        """Remove all expired entries"""
        now = datetime.now(timezone.utc)
        keys_to_remove = [
            key for key, (_, timestamp) in self._cache.items()
            if now - timestamp >= self._ttl
        ]
        for key in keys_to_remove:
            del self._cache[key]
        if keys_to_remove:
            logger.debug(f"Cleaned up {len(keys_to_remove)} expired cache entries")

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self):
        """Clear all cached values"""
        self._cache.clear()


class RegistryClient:
    """
    Latest-digest lookups across registry providers.

    Provider selection is by repository prefix, in order:
    GHCR, GitLab, GCR, then Docker Hub as the catch-all.
    """

    def __init__(
        self,
        cache_ttl: Optional[int] = None,
        timeout: Optional[int] = None,
        dockerhub_auth: Optional[Dict[str, str]] = None,
        github_token: Optional[str] = None,
        gitlab_auth: Optional[Dict[str, str]] = None,
        providers: Optional[List[RegistryProvider]] = None,
        fallback_provider: Optional[GitHubReleasesProvider] = None,
    ):
        self.cache = RegistryCache(cache_ttl if cache_ttl is not None else RegistryConfig.CACHE_TTL_SECONDS)
        timeout = timeout or RegistryConfig.REQUEST_TIMEOUT_SECONDS

        if providers is None:
            providers = [
                GHCRProvider(self.cache, timeout=timeout),
                GitLabProvider(self.cache, auth=gitlab_auth, timeout=timeout),
                GCRProvider(self.cache, timeout=timeout),
                DockerHubProvider(self.cache, auth=dockerhub_auth, timeout=timeout),
            ]
        self.providers = providers
        self.fallback_provider = fallback_provider or GitHubReleasesProvider(
            self.cache, token=github_token, timeout=timeout
        )
        self._provider_by_repo: Dict[str, RegistryProvider] = {}

    def get_provider(self, image_repo: str) -> RegistryProvider:
        """Return the provider for image_repo (Docker Hub when nothing else matches)"""
        provider = self._provider_by_repo.get(image_repo)
        if provider:
            return provider

        for candidate in self.providers:
            if candidate.can_handle(image_repo):
                provider = candidate
                break
        else:
            provider = next(
                (p for p in self.providers if isinstance(p, DockerHubProvider)),
                self.providers[-1],
            )

        self._provider_by_repo[image_repo] = provider
        return provider

    def _default_github_repo(self, image_repo: str, provider: RegistryProvider) -> Optional[str]:
        if isinstance(provider, GHCRProvider):
            return provider.github_repo(image_repo)
        return None

    async def _try_fallback(self, image_repo: str, tag: str, github_repo: Optional[str]) -> Optional[LatestImageInfo]:
        if not self.fallback_provider.can_handle(github_repo):
            return None
        result = await self.fallback_provider.get_latest_release(github_repo)
        if result:
            logger.info(f"Using GitHub Releases fallback for {image_repo}:{tag} (latest release {result.tag})")
        return result

    async def get_latest_digest(
        self,
        image_repo: str,
        tag: str = "latest",
        github_repo: Optional[str] = None,
    ) -> Optional[LatestImageInfo]:
        """
        Get the latest digest published under image_repo:tag.

        Args:
            image_repo: Repository as produced by parse_image_name (e.g. "nginx", "ghcr.io/org/app")
            tag: Tag to resolve
            github_repo: Optional "owner/repo" enabling the release-tag fallback

        Returns:
            LatestImageInfo. digest is None when the registry had no answer.
            None when the lookup failed and no fallback was available.

        Raises:
            RateLimitExceeded: registry rate limited and no fallback result exists
        """
        provider = self.get_provider(image_repo)
        github_repo = github_repo or self._default_github_repo(image_repo, provider)

        try:
            result = await provider.get_latest_digest(image_repo, tag)
        except RateLimitExceeded as e:
            logger.warning(f"Rate limited by {provider.name} for {image_repo}:{tag}")
            fallback = await self._try_fallback(image_repo, tag, github_repo) if github_repo else None
            if fallback:
                return fallback
            raise e
        except Exception as e:
            logger.warning(f"Registry lookup failed for {image_repo}:{tag} ({provider.name}): {e}")
            try:
                return await self._try_fallback(image_repo, tag, github_repo)
            except RateLimitExceeded:
                raise
            except Exception as fallback_error:
                logger.debug(f"Fallback provider also failed for {image_repo}:{tag}: {fallback_error}")
                return None

        if result:
            return result

        return LatestImageInfo(tag=tag, provider=provider.kind, digest=None, is_fallback=False)

    async def get_tag_publish_date(
        self,
        image_repo: str,
        tag: str,
        github_repo: Optional[str] = None,
    ) -> Optional[str]:
        """Publish date of image_repo:tag, from the registry or the release feed"""
        provider = self.get_provider(image_repo)
        try:
            date = await provider.get_tag_publish_date(image_repo, tag)
            if date:
                return date
            if self.fallback_provider.can_handle(github_repo):
                release = await self.fallback_provider.get_latest_release(github_repo)
                return release.publish_date if release else None
        except Exception as e:
            logger.debug(f"Failed to get publish date for {image_repo}:{tag}: {e}")
        return None

    def clear_cache(self, image_repo: str, tag: str) -> None:
        """Invalidate the cached latest digest for one repository/tag"""
        self.get_provider(image_repo).clear_cache(image_repo, tag)

    def clear_all(self) -> None:
        self.cache.clear()


# Global default instance
_registry_client = None


def get_registry_client() -> RegistryClient:
    """Get or create the process-wide default RegistryClient"""
    global _registry_client
    if _registry_client is None:
        _registry_client = RegistryClient(
            dockerhub_auth=RegistryConfig.dockerhub_auth(),
            github_token=RegistryConfig.GITHUB_TOKEN,
            gitlab_auth=(
                {'username': 'oauth2', 'password': RegistryConfig.GITLAB_TOKEN}
                if RegistryConfig.GITLAB_TOKEN else None
            ),
        )
    return _registry_client
