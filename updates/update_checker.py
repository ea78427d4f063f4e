"""
Update Checker Service

Decides whether a container's image is stale by comparing what the container
runs with what the registry (or a release feed) currently publishes.

Uncertainty always resolves to "no update": a false "update available" is
noisier than a late one.
"""

import logging
from dataclasses import replace
from typing import Dict, Iterable, Optional

from gateways.base import ContainerGateway
from gateways.errors import GatewayError
from models.container_models import ContainerSnapshot
from updates.digest import (
    digest_from_repo_digest,
    normalize_digest,
    normalize_digest_set,
    normalize_version,
)
from updates.errors import RateLimitExceeded
from updates.image_ref import parse_image_name
from updates.registry_adapter import RegistryClient, get_registry_client
from updates.types import CurrentImageInfo, LatestImageInfo, UpdateInfo

logger = logging.getLogger(__name__)


def evaluate(current: CurrentImageInfo, latest: Optional[LatestImageInfo]) -> UpdateInfo:
    """
    Compare current vs. latest image metadata.

    Rules, first match wins:
    1. Release-feed answers compare normalized version strings.
    2. Both digests known: differ => update, unless the latest digest is one
       of the current image's multi-arch RepoDigests.
    3. Anything else (no baseline digest, no latest digest): no update.

    Args:
        current: What the running container has
        latest: Registry answer, or None when the lookup found nothing

    Returns:
        UpdateInfo
    """
    current_digest = normalize_digest(current.digest)

    if latest is None:
        return UpdateInfo(
            current_tag=current.tag,
            latest_tag=current.tag,
            has_update=False,
            current_digest=current_digest,
        )

    latest_digest = normalize_digest(latest.digest)
    is_fallback = latest.is_fallback or latest.provider.is_version_tracking

    has_update = False
    if is_fallback and normalize_version(current.tag) and normalize_version(latest.tag):
        has_update = normalize_version(current.tag) != normalize_version(latest.tag)
    elif current_digest and latest_digest:
        if latest_digest in normalize_digest_set(current.repo_digests):
            # Multi-arch image: local digest belongs to another platform of the same manifest list
            has_update = False
        else:
            has_update = current_digest != latest_digest

    return UpdateInfo(
        current_tag=current.tag,
        latest_tag=latest.tag,
        has_update=has_update,
        provider=latest.provider,
        current_digest=current_digest,
        latest_digest=latest_digest,
        is_fallback=is_fallback,
        publish_date=latest.publish_date,
    )


def current_image_info(snapshot: ContainerSnapshot) -> CurrentImageInfo:
    """
    Build the "current" side of a comparison from a snapshot.

    A digest pinned in the image reference (nginx:1.25@sha256:...) is what
    the container runs. Otherwise the current digest is taken from the
    RepoDigests entry whose repository matches the container's image; if
    none matches, the first entry is used.
    """
    ref = parse_image_name(snapshot.image)

    digest = normalize_digest(ref.digest)
    if digest is None:
        for repo_digest in snapshot.repo_digests:
            repo_part, _, _ = repo_digest.partition('@')
            try:
                matches = parse_image_name(repo_part).image_repo == ref.image_repo
            except ValueError:
                matches = False
            if matches:
                digest = digest_from_repo_digest(repo_digest)
                break

    if digest is None and snapshot.repo_digests:
        digest = digest_from_repo_digest(snapshot.repo_digests[0])

    return CurrentImageInfo(
        tag=ref.tag,
        digest=digest,
        repo_digests=frozenset(snapshot.repo_digests),
    )


async def inspect_snapshot(gateway: ContainerGateway, container_id: str) -> ContainerSnapshot:
    """
    Inspect a container and the image it runs.

    The container inspect payload carries only the image ID; the digests the
    image was pulled by (RepoDigests) come from the image inspect. A failed
    image inspect leaves the snapshot without digests, which evaluates as
    "no update".

    Raises:
        GatewayError: the container inspect failed
    """
    attrs = await gateway.inspect(container_id)

    repo_digests = []
    image_id = attrs.get('Image')
    if image_id:
        try:
            image_attrs = await gateway.inspect_image(image_id)
            repo_digests = image_attrs.get('RepoDigests') or []
        except GatewayError as e:
            logger.warning(f"Could not inspect image {image_id[:19]} of container {container_id[:12]}: {e}")

    return ContainerSnapshot.from_inspect(attrs, repo_digests=repo_digests)


class UpdateChecker:
    """
    Checks containers for available image updates.

    Workflow:
    1. Derive current tag and digest from the container snapshot
    2. Ask the registry client for the latest digest under that tag
    3. Evaluate, fetching the publish date only when an update exists
    """

    def __init__(self, registry_client: Optional[RegistryClient] = None):
        self.registry = registry_client if registry_client is not None else get_registry_client()

    async def check_container(
        self,
        snapshot: ContainerSnapshot,
        github_repo: Optional[str] = None,
    ) -> Optional[UpdateInfo]:
        """
        Check a single container for an update.

        Returns:
            UpdateInfo, or None if the check failed

        Raises:
            RateLimitExceeded: registry rate limit, never downgraded
        """
        try:
            ref = parse_image_name(snapshot.image)
            current = current_image_info(snapshot)

            latest = await self.registry.get_latest_digest(ref.image_repo, ref.tag, github_repo=github_repo)
            info = evaluate(current, latest)

            if info.has_update and not info.publish_date:
                publish_date = await self.registry.get_tag_publish_date(
                    ref.image_repo, info.latest_tag, github_repo=github_repo
                )
                if publish_date:
                    info = replace(info, publish_date=publish_date)

            if info.has_update:
                logger.info(
                    f"Update available for {snapshot.name}: "
                    f"{(info.current_digest or info.current_tag)[:12]} → {(info.latest_digest or info.latest_tag)[:12]}"
                )
            else:
                logger.debug(f"No update for {snapshot.name} ({ref.image_repo}:{ref.tag})")
            return info

        except RateLimitExceeded:
            raise
        except Exception as e:
            logger.error(f"Error checking container {snapshot.name}: {e}")
            return None

    async def check_containers(
        self,
        snapshots: Iterable[ContainerSnapshot],
        github_repos: Optional[Dict[str, str]] = None,
    ) -> Dict:
        """
        Check several containers sequentially.

        Args:
            snapshots: Containers to check
            github_repos: Optional container name -> "owner/repo" mapping for the release fallback

        Returns:
            Dict with keys: total, checked, updates_found, errors, results (name -> UpdateInfo)

        Raises:
            RateLimitExceeded: aborts the remaining batch
        """
        snapshots = list(snapshots)
        github_repos = github_repos or {}
        logger.info(f"Starting update check for {len(snapshots)} containers")

        stats = {
            "total": len(snapshots),
            "checked": 0,
            "updates_found": 0,
            "errors": 0,
            "results": {},
        }

        for snapshot in snapshots:
            info = await self.check_container(snapshot, github_repo=github_repos.get(snapshot.name))
            if info is None:
                stats["errors"] += 1
                continue

            stats["checked"] += 1
            stats["results"][snapshot.name] = info
            if info.has_update:
                stats["updates_found"] += 1

        logger.info(
            f"Update check complete: total={stats['total']} checked={stats['checked']} "
            f"updates={stats['updates_found']} errors={stats['errors']}"
        )
        return stats

    async def check_gateway_container(
        self,
        gateway: ContainerGateway,
        container_id: str,
        github_repo: Optional[str] = None,
    ) -> Optional[UpdateInfo]:
        """
        Inspect a container (and its image) on a gateway, then check it.

        Returns:
            UpdateInfo, or None if the container could not be inspected or checked

        Raises:
            RateLimitExceeded: registry rate limit, never downgraded
        """
        try:
            snapshot = await inspect_snapshot(gateway, container_id)
        except GatewayError as e:
            logger.error(f"Error inspecting container {container_id}: {e}")
            return None
        return await self.check_container(snapshot, github_repo=github_repo)

    async def check_endpoint(
        self,
        gateway: ContainerGateway,
        github_repos: Optional[Dict[str, str]] = None,
    ) -> Dict:
        """
        Check every container on a gateway endpoint.

        Containers that vanish between the listing and the inspect are
        counted as errors.

        Returns:
            Same dict as check_containers

        Raises:
            GatewayError: the endpoint could not be listed
            RateLimitExceeded: aborts the remaining batch
        """
        summaries = await gateway.list_all()

        snapshots = []
        inspect_errors = 0
        for summary in summaries:
            container_id = summary.get('Id')
            if not container_id:
                continue
            try:
                snapshots.append(await inspect_snapshot(gateway, container_id))
            except GatewayError as e:
                logger.warning(f"Skipping container {container_id[:12]}: {e}")
                inspect_errors += 1

        stats = await self.check_containers(snapshots, github_repos=github_repos)
        stats["total"] += inspect_errors
        stats["errors"] += inspect_errors
        return stats
