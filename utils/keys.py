"""
Utility functions for upgrade lock key management.

A container is only unique within the endpoint of the gateway that manages
it, so every lock and batch key carries all three parts.
"""

SHORT_ID_LENGTH = 12


def make_composite_key(gateway_ref: str, endpoint_ref: str, container_id: str) -> str:
    """
    Create composite key in format: gateway_ref:endpoint_ref:container_id

    Args:
        gateway_ref: Gateway identifier (e.g. Portainer instance URL or name)
        endpoint_ref: Endpoint identifier within the gateway
        container_id: Container ID (full or short, normalized to SHORT)

    Returns:
        Composite key string (e.g., "portainer-1:2:67c5d2141338")

    Example:
        >>> make_composite_key("portainer-1", "2", "67c5d2141338aa")
        "portainer-1:2:67c5d2141338"
    """
    if not gateway_ref:
        raise ValueError("gateway_ref cannot be empty")
    if endpoint_ref is None or str(endpoint_ref) == "":
        raise ValueError("endpoint_ref cannot be empty")
    if not container_id:
        raise ValueError("container_id cannot be empty")

    if len(container_id) < SHORT_ID_LENGTH:
        raise ValueError(
            f"container_id must be at least {SHORT_ID_LENGTH} characters, got {len(container_id)}: {container_id}"
        )

    return f"{gateway_ref}:{endpoint_ref}:{container_id[:SHORT_ID_LENGTH]}"


def parse_composite_key(composite_key: str) -> tuple[str, str, str]:
    """
    Parse composite key into (gateway_ref, endpoint_ref, container_id) tuple.

    The gateway part may itself contain colons (URLs), so the key is split
    from the right.

    Raises:
        ValueError: If composite_key format is invalid

    Example:
        >>> parse_composite_key("https://portainer:9443:2:67c5d2141338")
        ("https://portainer:9443", "2", "67c5d2141338")
    """
    if not composite_key:
        raise ValueError("composite_key cannot be empty")

    parts = composite_key.rsplit(":", 2)
    if len(parts) != 3:
        raise ValueError(
            f"Invalid composite key format (expected 'gateway:endpoint:container_id'): {composite_key}"
        )

    gateway_ref, endpoint_ref, container_id = parts

    if not gateway_ref:
        raise ValueError(f"gateway part is empty in composite key: {composite_key}")
    if not endpoint_ref:
        raise ValueError(f"endpoint part is empty in composite key: {composite_key}")
    if len(container_id) != SHORT_ID_LENGTH:
        raise ValueError(
            f"container_id must be {SHORT_ID_LENGTH} characters (SHORT ID), got {len(container_id)}: {container_id}"
        )

    return gateway_ref, endpoint_ref, container_id
