"""Projection of delivery attributes into message metadata."""

from collections.abc import Iterable, Mapping
from typing import Any


def project_metadata(
    attributes: Mapping[str, Any], fields: Iterable[str]
) -> dict[str, Any]:
    """
    Copy the requested delivery attributes into a new mapping.

    Only fields that are both requested and present are copied, with
    values left untouched. Names the client does not expose are skipped
    so option lists stay valid across client versions.

    Args:
        attributes: All attributes the broker client attached to a delivery
        fields: Allow-list of attribute names

    Returns:
        Dict of selected attributes
    """
    return {field: attributes[field] for field in fields if field in attributes}
