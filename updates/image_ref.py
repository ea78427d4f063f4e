"""
Image reference parsing.

Splits references such as "nginx", "linuxserver/sonarr:4", "ghcr.io/org/app:v1"
or "registry.local:5000/team/app@sha256:..." into their parts. The resulting
image_repo keeps the registry host for anything not on Docker Hub, which is
what registry provider selection keys on.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

KNOWN_REGISTRIES = (
    "ghcr.io",
    "gcr.io",
    "quay.io",
    "registry.gitlab.com",
    "lscr.io",
    "docker.io",
)

DOCKERHUB_ALIASES = (
    "docker.io",
    "index.docker.io",
    "registry-1.docker.io",
    "registry.docker.io",
)


@dataclass(frozen=True)
class ImageRef:
    """Parsed image reference"""
    registry: str
    namespace: Optional[str]
    repository: str
    tag: str
    image_repo: str  # Repository identifier used for registry lookups
    digest: Optional[str] = None
    has_tag: bool = True  # False when the tag was defaulted to "latest"

    @property
    def is_dockerhub(self) -> bool:
        return self.registry in DOCKERHUB_ALIASES

    @property
    def pull_ref(self) -> str:
        return f"{self.image_repo}:{self.tag}"


def _looks_like_registry(component: str) -> bool:
    return component in KNOWN_REGISTRIES or "." in component or ":" in component or component == "localhost"


def parse_image_name(image: str) -> ImageRef:
    """
    Parse an image reference into registry, namespace, repository and tag.

    Args:
        image: Image reference as found in Config.Image

    Returns:
        ImageRef

    Raises:
        ValueError: If image is empty

    Examples:
        >>> parse_image_name("nginx").image_repo
        'nginx'
        >>> parse_image_name("ghcr.io/immich-app/immich-server:v1.2").tag
        'v1.2'
        >>> parse_image_name("registry.local:5000/app").tag
        'latest'
    """
    if not image or not isinstance(image, str):
        raise ValueError("Invalid image name provided")

    name = image.strip()

    digest = None
    if "@" in name:
        name, _, digest = name.partition("@")
        # Bare "@sha256" without a value is a truncated reference
        if not digest or digest.lower() == "sha256":
            digest = None

    # The tag separator is a colon in the last path component only
    last_slash = name.rfind("/")
    last_colon = name.rfind(":")
    has_tag = last_colon > last_slash
    if has_tag:
        name, tag = name[:last_colon], name[last_colon + 1:]
    else:
        tag = DEFAULT_TAG
    tag = tag or DEFAULT_TAG

    parts = name.split("/")
    if len(parts) > 1 and _looks_like_registry(parts[0]):
        registry = parts[0]
        path_parts = parts[1:]
    else:
        registry = DEFAULT_REGISTRY
        path_parts = parts

    if len(path_parts) > 1:
        namespace = path_parts[0]
        repository = "/".join(path_parts[1:])
    else:
        namespace = None
        repository = path_parts[0]

    if registry in DOCKERHUB_ALIASES:
        if namespace == "library":
            namespace = None
        image_repo = f"{namespace}/{repository}" if namespace else repository
    else:
        image_repo = "/".join([registry] + ([namespace] if namespace else []) + [repository])

    return ImageRef(
        registry=registry,
        namespace=namespace,
        repository=repository,
        tag=tag,
        image_repo=image_repo,
        digest=digest,
        has_tag=has_tag,
    )


def split_repo_tag(image: str) -> Tuple[str, str]:
    """
    Return the (repo, tag) pair to pull for an image reference.

    Any digest pin is dropped so the pull fetches whatever the tag points at
    now; a missing tag becomes "latest".

    Raises:
        ValueError: reference is pinned by digest only, so there is no tag to re-pull

    Example:
        >>> split_repo_tag("nginx:1.25@sha256:abc")
        ('nginx', '1.25')
    """
    ref = parse_image_name(image)
    if ref.digest and not ref.has_tag:
        raise ValueError(f"Image {image} is pinned by digest without a tag; there is no tag to re-pull")
    return ref.image_repo, ref.tag
