"""
Registry providers for latest-digest lookups.

Each provider knows how to authenticate against one registry family and
resolve repo:tag to the digest currently published under that tag. A lookup
that cannot be resolved returns None; only HTTP 429 escapes as
RateLimitExceeded so batch checks stop instead of reporting "no update".

Providers:
- GHCRProvider: ghcr.io
- GitLabProvider: registry.gitlab.com
- GCRProvider: gcr.io
- DockerHubProvider: docker.io, lscr.io and plain "namespace/repo" names (default)
- GitHubReleasesProvider: version-only fallback from GitHub release tags
"""

import asyncio
import base64
import hashlib
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional, Tuple

import aiohttp

from updates.errors import RateLimitExceeded
from updates.types import LatestImageInfo, RegistryProviderKind

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = (
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.oci.image.manifest.v1+json,"
    "application/vnd.oci.image.index.v1+json"
)

# Registry bearer tokens typically live 5 minutes
TOKEN_LIFETIME = timedelta(minutes=4)


def _parse_retry_after(headers) -> Optional[int]:
    value = headers.get("Retry-After") if headers else None
    if value and str(value).isdigit():
        return int(value)
    return None


def parse_www_authenticate(header: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Parse a Bearer WWW-Authenticate challenge.

    Example:
        Input: 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'
        Output: {"realm": "https://ghcr.io/token", "service": "ghcr.io", "scope": "repository:user/app:pull"}
    """
    if not header or not header.startswith("Bearer "):
        return None

    params = dict(re.findall(r'(\w+)="([^"]+)"', header[len("Bearer "):]))
    if "realm" not in params:
        logger.warning("WWW-Authenticate missing 'realm' parameter")
        return None
    return params


class RegistryProvider:
    """
    Base provider for OCI / Docker Registry v2 compatible registries.

    Subclasses set the registry host, the repo prefixes they claim and, when
    the registry does not advertise its token service, a fixed token realm.
    """

    kind: RegistryProviderKind = None
    registry_host: str = ""
    prefixes: Tuple[str, ...] = ()
    token_realm: Optional[str] = None
    token_service: Optional[str] = None

    def __init__(self, cache, auth: Optional[Dict[str, str]] = None, timeout: int = 30):
        """
        Args:
            cache: RegistryCache shared by the owning RegistryClient
            auth: Optional {"username", "password"} used for token requests
            timeout: Per-request timeout in seconds
        """
        self.cache = cache
        self.auth = auth
        self.timeout = timeout
        self._token_cache: Dict[str, Dict] = {}

    @property
    def name(self) -> str:
        return self.kind.value

    def can_handle(self, image_repo: str) -> bool:
        return any(image_repo.startswith(prefix) for prefix in self.prefixes)

    def normalize_repo(self, image_repo: str) -> str:
        for prefix in self.prefixes:
            if image_repo.startswith(prefix):
                return image_repo[len(prefix):]
        return image_repo

    def _cache_key(self, image_repo: str, tag: str) -> str:
        return f"{self.name}:{self.normalize_repo(image_repo)}:{tag}"

    def clear_cache(self, image_repo: str, tag: str) -> None:
        """Forget the cached latest digest for one repo:tag"""
        key = self._cache_key(image_repo, tag)
        self.cache.invalidate(key)
        self.cache.invalidate(f"{key}:published")
        logger.debug(f"Cleared registry cache for {image_repo}:{tag} ({self.name})")

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Mapping[str, str], bytes]:
        """Perform one HTTP request and return (status, case-insensitive headers, body)"""
        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                url,
                headers=headers or {},
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                body = await response.read()
                return response.status, response.headers.copy(), body

    def _encode_basic_auth(self) -> Optional[str]:
        if not self.auth:
            return None
        credentials = f"{self.auth['username']}:{self.auth['password']}"
        return f"Basic {base64.b64encode(credentials.encode()).decode()}"

    async def _discover_auth(self, repo: str) -> Optional[Dict[str, str]]:
        """Probe the manifest endpoint anonymously and parse the 401 challenge"""
        status, headers, _ = await self._request(
            "HEAD", self._manifest_url(repo, "latest"), headers={"Accept": MANIFEST_ACCEPT}
        )
        if status == 401:
            return parse_www_authenticate(headers.get("WWW-Authenticate"))
        return None

    async def _get_token(self, repo: str) -> Optional[str]:
        """
        Return an Authorization header value for pulling repo, or None for anonymous access.

        Tokens are cached per provider instance for a little under their lifetime.
        """
        cached = self._token_cache.get(repo)
        if cached and datetime.now(timezone.utc) < cached["expires_at"]:
            return cached["token"]

        if self.token_realm:
            params = {"scope": f"repository:{repo}:pull"}
            if self.token_service:
                params["service"] = self.token_service
            realm = self.token_realm
        else:
            challenge = await self._discover_auth(repo)
            if not challenge:
                return self._encode_basic_auth()
            realm = challenge["realm"]
            params = {k: v for k, v in challenge.items() if k in ("service", "scope")}
            params.setdefault("scope", f"repository:{repo}:pull")

        headers = {}
        basic = self._encode_basic_auth()
        if basic:
            headers["Authorization"] = basic

        status, resp_headers, body = await self._request("GET", realm, headers=headers, params=params)
        if status == 429:
            raise RateLimitExceeded(
                f"{self.name} token service rate limit exceeded",
                provider=self.name,
                retry_after=_parse_retry_after(resp_headers),
            )
        if status != 200:
            logger.warning(f"Token request to {realm} for {repo} failed with status {status}")
            return None

        data = json.loads(body or b"{}")
        token = data.get("token") or data.get("access_token")
        if not token:
            logger.warning(f"Token endpoint {realm} returned no token for {repo}")
            return None

        bearer = f"Bearer {token}"
        self._token_cache[repo] = {"token": bearer, "expires_at": datetime.now(timezone.utc) + TOKEN_LIFETIME}
        return bearer

    def _manifest_url(self, repo: str, tag: str) -> str:
        return f"https://{self.registry_host}/v2/{repo}/manifests/{tag}"

    async def _fetch_manifest_digest(self, repo: str, tag: str, token: Optional[str]) -> Optional[str]:
        """
        Resolve repo:tag to the digest registries report for it.

        For multi-platform images this is the manifest list / index digest,
        which is what `docker inspect` records in RepoDigests.
        """
        headers = {"Accept": MANIFEST_ACCEPT}
        if token:
            headers["Authorization"] = token

        url = self._manifest_url(repo, tag)
        status, resp_headers, _ = await self._request("HEAD", url, headers=headers)

        if status == 200 and resp_headers.get("Docker-Content-Digest"):
            return resp_headers["Docker-Content-Digest"]

        if status == 200:
            # Some registries omit the digest header on HEAD; hash the manifest body
            status, resp_headers, body = await self._request("GET", url, headers=headers)
            if status == 200:
                return resp_headers.get("Docker-Content-Digest") or f"sha256:{hashlib.sha256(body).hexdigest()}"

        if status == 429:
            raise RateLimitExceeded(
                f"{self.name} registry rate limit exceeded for {repo}:{tag}",
                provider=self.name,
                retry_after=_parse_retry_after(resp_headers),
            )
        if status in (401, 403):
            logger.warning(f"Access denied resolving {repo}:{tag} on {self.registry_host} ({status})")
        elif status == 404:
            logger.info(f"Image not found: {repo}:{tag} on {self.registry_host}")
        else:
            logger.warning(f"Registry {self.registry_host} returned {status} for {repo}:{tag}")
        return None

    async def get_latest_digest(self, image_repo: str, tag: str = "latest") -> Optional[LatestImageInfo]:
        """
        Look up the digest currently published under image_repo:tag.

        Returns:
            LatestImageInfo, or None when the manifest cannot be resolved

        Raises:
            RateLimitExceeded: registry answered 429
        """
        if "@sha256" in tag:
            logger.debug(f"Skipping lookup for digest-pinned tag {image_repo}:{tag}")
            return None

        cache_key = self._cache_key(image_repo, tag)
        cached = self.cache.get(cache_key)
        if cached:
            logger.debug(f"Cache hit for {image_repo}:{tag}")
            return cached

        repo = self.normalize_repo(image_repo)
        try:
            token = await self._get_token(repo)
            digest = await self._fetch_manifest_digest(repo, tag, token)
        except RateLimitExceeded:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Error resolving {image_repo}:{tag} on {self.registry_host}: {e}")
            return None

        if not digest:
            return None

        result = LatestImageInfo(tag=tag, provider=self.kind, digest=digest)
        self.cache.set(cache_key, result)
        logger.info(f"Resolved {image_repo}:{tag} -> {digest[:19]}...")
        return result

    async def get_tag_publish_date(self, image_repo: str, tag: str) -> Optional[str]:
        """Registries without a metadata API cannot report publish dates"""
        return None


class GHCRProvider(RegistryProvider):
    kind = RegistryProviderKind.GHCR
    registry_host = "ghcr.io"
    prefixes = ("ghcr.io/",)
    token_realm = "https://ghcr.io/token"
    token_service = "ghcr.io"

    def github_repo(self, image_repo: str) -> Optional[str]:
        """GHCR images usually mirror their GitHub repo: ghcr.io/owner/repo -> owner/repo"""
        repo = self.normalize_repo(image_repo)
        return repo if "/" in repo else None


class GitLabProvider(RegistryProvider):
    kind = RegistryProviderKind.GITLAB
    registry_host = "registry.gitlab.com"
    prefixes = ("registry.gitlab.com/",)
    token_realm = "https://gitlab.com/jwt/auth"
    token_service = "container_registry"


class GCRProvider(RegistryProvider):
    kind = RegistryProviderKind.GCR
    registry_host = "gcr.io"
    prefixes = ("gcr.io/",)
    token_realm = "https://gcr.io/v2/token"
    token_service = "gcr.io"


class DockerHubProvider(RegistryProvider):
    kind = RegistryProviderKind.DOCKERHUB
    registry_host = "registry-1.docker.io"
    prefixes = (
        "docker.io/",
        "index.docker.io/",
        "registry-1.docker.io/",
        "registry.docker.io/",
        "lscr.io/",  # linuxserver images are mirrored to Docker Hub under the same name
    )
    token_realm = "https://auth.docker.io/token"
    token_service = "registry.docker.io"

    HUB_API = "https://hub.docker.com/v2"

    def can_handle(self, image_repo: str) -> bool:
        if super().can_handle(image_repo):
            return True
        # No registry host in the first component means Docker Hub
        first = image_repo.split("/", 1)[0]
        return "." not in first and ":" not in first and first != "localhost"

    def normalize_repo(self, image_repo: str) -> str:
        repo = super().normalize_repo(image_repo)
        if "/" not in repo:
            repo = f"library/{repo}"
        return repo

    async def get_tag_publish_date(self, image_repo: str, tag: str) -> Optional[str]:
        """Publish date from the Docker Hub tags API (tag_last_pushed, else last_updated)"""
        cache_key = f"{self._cache_key(image_repo, tag)}:published"
        cached = self.cache.get(cache_key)
        if cached:
            return cached

        repo = self.normalize_repo(image_repo)
        url = f"{self.HUB_API}/repositories/{repo}/tags/{tag}"
        try:
            status, _, body = await self._request("GET", url, headers={"Accept": "application/json"})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Failed to fetch publish date for {image_repo}:{tag}: {e}")
            return None

        if status != 200:
            if status != 404:
                logger.debug(f"Docker Hub tags API returned {status} for {image_repo}:{tag}")
            return None

        try:
            data = json.loads(body or b"{}")
        except ValueError:
            return None
        publish_date = data.get("tag_last_pushed") or data.get("last_updated")
        if publish_date:
            self.cache.set(cache_key, publish_date)
        return publish_date


class GitHubReleasesProvider:
    """
    Version-only fallback using the latest GitHub release of a mapped repo.

    Results carry no digest and is_fallback=True, so evaluation falls back to
    comparing version strings.
    """

    kind = RegistryProviderKind.GITHUB_RELEASES
    API = "https://api.github.com"

    def __init__(self, cache, token: Optional[str] = None, timeout: int = 30):
        self.cache = cache
        self.token = token
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.kind.value

    def can_handle(self, github_repo: Optional[str]) -> bool:
        return bool(github_repo) and "/" in github_repo

    async def _fetch_latest_release(self, github_repo: str) -> Optional[Dict]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"{self.API}/repos/{github_repo}/releases/latest",
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 429 or (
                    response.status == 403 and response.headers.get("X-RateLimit-Remaining") == "0"
                ):
                    raise RateLimitExceeded(
                        f"GitHub API rate limit exceeded for {github_repo}",
                        provider=self.name,
                        retry_after=_parse_retry_after(response.headers),
                    )
                if response.status != 200:
                    logger.debug(f"GitHub releases lookup for {github_repo} returned {response.status}")
                    return None
                return await response.json()

    async def get_latest_release(self, github_repo: str) -> Optional[LatestImageInfo]:
        cache_key = f"{self.name}:{github_repo}"
        cached = self.cache.get(cache_key)
        if cached:
            return cached

        try:
            release = await self._fetch_latest_release(github_repo)
        except RateLimitExceeded:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Error fetching latest release for {github_repo}: {e}")
            return None

        if not release or not release.get("tag_name"):
            return None

        result = LatestImageInfo(
            tag=release["tag_name"],
            provider=self.kind,
            digest=None,
            publish_date=release.get("published_at"),
            is_fallback=True,
        )
        self.cache.set(cache_key, result)
        return result

    def clear_cache(self, github_repo: str) -> None:
        self.cache.invalidate(f"{self.name}:{github_repo}")
