"""Split attribute deltas into whole-value replacements and multi-valued changes."""

import logging
from typing import Iterable, List, Tuple

from graph_connector.objects import Attribute, AttributeDelta, AttributeSet

logger = logging.getLogger(__name__)


def partition_deltas(deltas: Iterable[AttributeDelta]) -> Tuple[AttributeSet, List[AttributeDelta]]:
    """
    Partition deltas by payload kind.

    A delta whose replace payload is present, including an empty one that
    clears the attribute, becomes an Attribute in the replace set. Every
    other delta is passed through unchanged, in input order, to the
    multi-value list.

    Args:
        deltas: Attribute deltas from the host

    Returns:
        Tuple of (replace set keyed by attribute name, multi-value deltas)
    """
    replace_set: AttributeSet = {}
    multi_value: List[AttributeDelta] = []

    for delta in deltas:
        if delta.values_to_replace is not None:
            if delta.name in replace_set:
                logger.warning(f"Duplicate replace delta for '{delta.name}', keeping the last one")
            replace_set[delta.name] = Attribute(delta.name, delta.values_to_replace)
            logger.debug(f"Replace delta: {delta.name} ({len(delta.values_to_replace)} values)")
        else:
            multi_value.append(delta)
            logger.debug(f"Multi-value delta: {delta.name} (+{len(delta.values_to_add or ())} "
                         f"-{len(delta.values_to_remove or ())})")

    return replace_set, multi_value
