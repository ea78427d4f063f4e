"""
Digest and version string canonicalization.

Registries, `docker inspect` and release feeds spell the same identifier in
different ways ("sha256:ABC...", "abc...", "v1.2.0", "1.2.0"); everything is
normalized here before it is compared.
"""

import re
from typing import Iterable, Optional, Set

_SHA256_PREFIX = re.compile(r'^sha256:', re.IGNORECASE)
_VERSION_PREFIX = re.compile(r'^v', re.IGNORECASE)


def normalize_digest(digest: Optional[str]) -> Optional[str]:
    """
    Strip an optional sha256: prefix (any case) and lower-case.

    Examples:
        >>> normalize_digest("SHA256:ABCDEF")
        'abcdef'
        >>> normalize_digest("abcdef")
        'abcdef'
    """
    if not digest:
        return None
    value = _SHA256_PREFIX.sub('', digest.strip()).lower()
    return value or None


def digest_from_repo_digest(repo_digest: str) -> Optional[str]:
    """
    Extract the normalized digest from a RepoDigests entry.

    Example:
        >>> digest_from_repo_digest("nginx@sha256:AbC")
        'abc'
    """
    if not repo_digest:
        return None
    _, _, digest = repo_digest.rpartition('@')
    return normalize_digest(digest)


def normalize_digest_set(digests: Optional[Iterable[str]]) -> Set[str]:
    """Normalize a collection of digests or RepoDigests entries."""
    result = set()
    for d in digests or ():
        value = digest_from_repo_digest(d) if '@' in d else normalize_digest(d)
        if value:
            result.add(value)
    return result


def digests_equal(a: Optional[str], b: Optional[str]) -> bool:
    """Case- and prefix-insensitive digest equality; unknown never equals anything."""
    na, nb = normalize_digest(a), normalize_digest(b)
    return na is not None and na == nb


def normalize_version(version: Optional[str]) -> str:
    """
    Normalize a release version for comparison.

    Strips an optional leading "v", surrounding whitespace, and lower-cases.

    Examples:
        >>> normalize_version("v1.2.0")
        '1.2.0'
        >>> normalize_version(" V2.0-RC1 ")
        '2.0-rc1'
    """
    if not version:
        return ''
    return _VERSION_PREFIX.sub('', str(version).strip()).strip().lower()
