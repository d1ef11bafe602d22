"""
stackpilot/utils/outputs.py

Projects the engine's flat output namespace back onto the construct tree that
declared the outputs. The synthesized definition records, under
'//' -> 'outputs', a nested mapping of construct ids whose string leaves are
output names, e.g.

    {"MyStack": {"bucket": {"arn": "bucket_arn_1A2B3C"}}}

Given the flat outputs {"bucket_arn_1A2B3C": "arn:..."} the projection is

    {"MyStack": {"bucket": {"arn": "arn:..."}}}

Leaves whose output is not in the flat map are dropped, and so are subtrees left
empty by that. Flat outputs that no construct declares never show up in the
projection; the flat map stays the source of truth.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Set, Union

from stackpilot.models.stack_events import NestedOutputs
from stackpilot.models.terraform import TerraformJson

logger = logging.getLogger(__name__)


def _declared_tree(definition: Union[TerraformJson, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(definition, TerraformJson):
        return definition.construct_metadata.outputs
    metadata = definition.get("//")
    if not isinstance(metadata, Mapping):
        return {}
    outputs = metadata.get("outputs")
    return outputs if isinstance(outputs, Mapping) else {}


def _project(
    tree: Mapping[str, Any], outputs: Mapping[str, Any], used: Set[str]
) -> NestedOutputs:
    projected: NestedOutputs = {}
    for construct_id, node in tree.items():
        if isinstance(node, str):
            if node in outputs:
                projected[construct_id] = outputs[node]
                used.add(node)
        elif isinstance(node, Mapping):
            child = _project(node, outputs, used)
            if child:
                projected[construct_id] = child
    return projected


def get_construct_ids_for_outputs(
    definition: Union[TerraformJson, Mapping[str, Any]],
    outputs: Mapping[str, Any],
) -> NestedOutputs:
    """Re-key flat outputs by the construct-id path that declared them.

    Pure: the same definition and outputs always give the same tree, and neither
    argument is modified.

    Args:
        definition: The parsed definition, as a TerraformJson or plain dict.
        outputs: Flat output name -> value mapping from the backend.

    Returns:
        NestedOutputs: The projected tree.
    """
    used: Set[str] = set()
    projected = _project(_declared_tree(definition), outputs, used)

    unattributed = sorted(set(outputs) - used)
    if unattributed:
        logger.debug(
            "Outputs without a declaring construct, kept only in the flat map: %s",
            ", ".join(unattributed),
        )
    return projected
