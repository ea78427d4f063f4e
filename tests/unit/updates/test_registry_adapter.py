"""
Tests for RegistryCache and RegistryClient.

Provider network calls are replaced with AsyncMocks; these tests cover
provider selection, the GitHub Releases fallback and rate-limit handling.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from updates.errors import RateLimitExceeded
from updates.registry_adapter import RegistryCache, RegistryClient
from updates.registry_providers import (
    DockerHubProvider,
    GCRProvider,
    GHCRProvider,
    GitHubReleasesProvider,
    GitLabProvider,
)
from updates.types import LatestImageInfo, RegistryProviderKind


@pytest.mark.unit
class TestRegistryCache:

    def test_get_set(self):
        cache = RegistryCache(ttl_seconds=60)
        cache.set("k", "v")
        assert cache.get("k") == "v"
        assert cache.get("missing") is None

    def test_expired_entry_dropped(self):
        cache = RegistryCache(ttl_seconds=60)
        cache.set("k", "v")
        value, _ = cache._cache["k"]
        cache._cache["k"] = (value, datetime.now(timezone.utc) - timedelta(seconds=61))

        assert cache.get("k") is None
        assert len(cache) == 0

    def test_invalidate_single_key(self):
        cache = RegistryCache()
        cache.set("dockerhub:library/nginx:latest", "a")
        cache.set("dockerhub:library/nginx:1.25", "b")

        assert cache.invalidate("dockerhub:library/nginx:latest") is True
        assert cache.invalidate("dockerhub:library/nginx:latest") is False
        assert cache.get("dockerhub:library/nginx:1.25") == "b"

    def test_invalidate_prefix(self):
        cache = RegistryCache()
        cache.set("ghcr:org/app:v1", 1)
        cache.set("ghcr:org/app:v2", 2)
        cache.set("ghcr:org/other:v1", 3)

        assert cache.invalidate_prefix("ghcr:org/app:") == 2
        assert len(cache) == 1

    def test_size_limit_evicts_oldest(self):
        cache = RegistryCache(ttl_seconds=3600)
        cache.MAX_CACHE_SIZE = 10
        for i in range(10):
            cache.set(f"k{i}", i)
        cache._cache["k0"] = (0, datetime.now(timezone.utc) - timedelta(seconds=100))

        cache.set("new", "x")

        assert "k0" not in cache._cache
        assert cache.get("new") == "x"
        assert len(cache) == 10


def make_client(**kwargs):
    return RegistryClient(cache_ttl=60, timeout=5, **kwargs)


@pytest.mark.unit
class TestProviderSelection:

    @pytest.mark.parametrize("image_repo,provider_cls", [
        ("nginx", DockerHubProvider),
        ("linuxserver/sonarr", DockerHubProvider),
        ("lscr.io/linuxserver/sonarr", DockerHubProvider),
        ("ghcr.io/immich-app/immich-server", GHCRProvider),
        ("registry.gitlab.com/group/app", GitLabProvider),
        ("gcr.io/project/app", GCRProvider),
        ("quay.io/prometheus/node-exporter", DockerHubProvider),
    ])
    def test_provider_by_prefix(self, image_repo, provider_cls):
        assert isinstance(make_client().get_provider(image_repo), provider_cls)

    def test_provider_memoized(self):
        client = make_client()
        assert client.get_provider("nginx") is client.get_provider("nginx")


def mock_provider(kind=RegistryProviderKind.DOCKERHUB, result=None, side_effect=None):
    provider = MagicMock()
    provider.kind = kind
    provider.name = kind.value
    provider.can_handle = MagicMock(return_value=True)
    provider.get_latest_digest = AsyncMock(return_value=result, side_effect=side_effect)
    provider.get_tag_publish_date = AsyncMock(return_value=None)
    return provider


def mock_fallback(result=None, side_effect=None):
    fallback = GitHubReleasesProvider(RegistryCache())
    fallback.get_latest_release = AsyncMock(return_value=result, side_effect=side_effect)
    return fallback


RELEASE = LatestImageInfo(
    tag="v1.3.0",
    provider=RegistryProviderKind.GITHUB_RELEASES,
    publish_date="2025-06-01T00:00:00Z",
    is_fallback=True,
)


@pytest.mark.unit
class TestGetLatestDigest:

    @pytest.mark.asyncio
    async def test_registry_answer_returned(self):
        answer = LatestImageInfo(tag="latest", provider=RegistryProviderKind.DOCKERHUB, digest="sha256:abc")
        client = make_client(providers=[mock_provider(result=answer)], fallback_provider=mock_fallback())

        assert await client.get_latest_digest("nginx", "latest") is answer

    @pytest.mark.asyncio
    async def test_unresolved_manifest_yields_digestless_answer(self):
        client = make_client(providers=[mock_provider(result=None)], fallback_provider=mock_fallback())

        result = await client.get_latest_digest("nginx", "1.25")

        assert result.digest is None
        assert result.tag == "1.25"
        assert result.provider == RegistryProviderKind.DOCKERHUB
        assert result.is_fallback is False

    @pytest.mark.asyncio
    async def test_rate_limit_without_mapping_propagates(self):
        fallback = mock_fallback(result=RELEASE)
        client = make_client(
            providers=[mock_provider(side_effect=RateLimitExceeded("429", provider="dockerhub"))],
            fallback_provider=fallback,
        )

        with pytest.raises(RateLimitExceeded):
            await client.get_latest_digest("nginx", "latest")
        fallback.get_latest_release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_uses_release_fallback_when_mapped(self):
        client = make_client(
            providers=[mock_provider(side_effect=RateLimitExceeded("429"))],
            fallback_provider=mock_fallback(result=RELEASE),
        )

        result = await client.get_latest_digest("nginx", "latest", github_repo="nginx/nginx")

        assert result is RELEASE

    @pytest.mark.asyncio
    async def test_rate_limit_reraised_when_fallback_empty(self):
        client = make_client(
            providers=[mock_provider(side_effect=RateLimitExceeded("429"))],
            fallback_provider=mock_fallback(result=None),
        )

        with pytest.raises(RateLimitExceeded):
            await client.get_latest_digest("nginx", "latest", github_repo="nginx/nginx")

    @pytest.mark.asyncio
    async def test_lookup_error_tries_fallback(self):
        client = make_client(
            providers=[mock_provider(side_effect=RuntimeError("network down"))],
            fallback_provider=mock_fallback(result=RELEASE),
        )

        assert await client.get_latest_digest("nginx", "latest", github_repo="nginx/nginx") is RELEASE

    @pytest.mark.asyncio
    async def test_lookup_error_without_mapping_returns_none(self):
        client = make_client(
            providers=[mock_provider(side_effect=RuntimeError("network down"))],
            fallback_provider=mock_fallback(result=RELEASE),
        )

        assert await client.get_latest_digest("nginx", "latest") is None

    @pytest.mark.asyncio
    async def test_fallback_rate_limit_propagates(self):
        client = make_client(
            providers=[mock_provider(side_effect=RuntimeError("network down"))],
            fallback_provider=mock_fallback(side_effect=RateLimitExceeded("github 429")),
        )

        with pytest.raises(RateLimitExceeded):
            await client.get_latest_digest("nginx", "latest", github_repo="nginx/nginx")

    @pytest.mark.asyncio
    async def test_ghcr_derives_github_repo(self):
        ghcr = GHCRProvider(RegistryCache())
        ghcr.get_latest_digest = AsyncMock(side_effect=RateLimitExceeded("429"))
        fallback = mock_fallback(result=RELEASE)
        client = make_client(providers=[ghcr], fallback_provider=fallback)

        result = await client.get_latest_digest("ghcr.io/immich-app/immich-server", "release")

        assert result is RELEASE
        fallback.get_latest_release.assert_awaited_once_with("immich-app/immich-server")


@pytest.mark.unit
class TestPublishDateAndCache:

    @pytest.mark.asyncio
    async def test_publish_date_from_registry(self):
        provider = mock_provider()
        provider.get_tag_publish_date.return_value = "2025-05-01T00:00:00Z"
        client = make_client(providers=[provider], fallback_provider=mock_fallback())

        assert await client.get_tag_publish_date("nginx", "latest") == "2025-05-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_publish_date_from_release(self):
        client = make_client(providers=[mock_provider()], fallback_provider=mock_fallback(result=RELEASE))

        date = await client.get_tag_publish_date("nginx", "latest", github_repo="nginx/nginx")

        assert date == "2025-06-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_publish_date_errors_are_swallowed(self):
        provider = mock_provider()
        provider.get_tag_publish_date.side_effect = RuntimeError("boom")
        client = make_client(providers=[provider], fallback_provider=mock_fallback())

        assert await client.get_tag_publish_date("nginx", "latest") is None

    def test_clear_cache_invalidates_one_tag(self):
        client = make_client()
        hub = client.get_provider("nginx")
        client.cache.set(hub._cache_key("nginx", "latest"), "cached")
        client.cache.set(hub._cache_key("nginx", "1.25"), "other")

        client.clear_cache("nginx", "latest")

        assert client.cache.get("dockerhub:library/nginx:latest") is None
        assert client.cache.get("dockerhub:library/nginx:1.25") == "other"

    def test_clear_all(self):
        client = make_client()
        client.cache.set("x", 1)
        client.clear_all()
        assert len(client.cache) == 0
