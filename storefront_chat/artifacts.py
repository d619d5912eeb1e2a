"""Artifact merging and identity-based de-duplication.

The assistant may repeat the same product across several artifact chunks of
one turn.  Items sharing an identity key collapse to a single entry that
keeps its first position; later deliveries overwrite earlier field values.
Items without an identity key are kept as delivered.
"""

from typing import Any

from .models import Artifact

DEFAULT_IDENTITY_FIELD = "id"


def item_key(item: Any, identity_field: str = DEFAULT_IDENTITY_FIELD):
    """Return the identity key of *item*, or ``None`` if it has none."""
    if isinstance(item, dict):
        key = item.get(identity_field)
        if key is not None and key != "":
            return str(key)
    return None


def dedupe_items(items: list, identity_field: str = DEFAULT_IDENTITY_FIELD) -> list:
    result: list = []
    index: dict[str, int] = {}
    for item in items:
        key = item_key(item, identity_field)
        if key is None:
            result.append(item)
            continue
        pos = index.get(key)
        if pos is None:
            index[key] = len(result)
            result.append(dict(item))
        else:
            result[pos] = {**result[pos], **item}
    return result


def merge_artifact(
    artifacts: list[Artifact],
    incoming: Artifact,
    identity_field: str = DEFAULT_IDENTITY_FIELD,
) -> Artifact:
    """Merge *incoming* into *artifacts* (in place) under its declared type.

    Returns the artifact that now holds the merged items.
    """
    for existing in artifacts:
        if existing.type == incoming.type:
            existing.data = dedupe_items(existing.data + incoming.data, identity_field)
            if incoming.tool:
                existing.tool = incoming.tool
            if incoming.metadata:
                existing.metadata = {**(existing.metadata or {}), **incoming.metadata}
            return existing
    merged = Artifact(
        type=incoming.type,
        data=dedupe_items(incoming.data, identity_field),
        tool=incoming.tool,
        metadata=dict(incoming.metadata) if incoming.metadata else None,
    )
    artifacts.append(merged)
    return merged


def finalize_artifacts(
    artifacts: list[Artifact],
    identity_field: str = DEFAULT_IDENTITY_FIELD,
) -> None:
    """Run one last de-duplication pass before a message is sealed."""
    for artifact in artifacts:
        artifact.data = dedupe_items(artifact.data, identity_field)
