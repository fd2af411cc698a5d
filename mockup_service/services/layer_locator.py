"""
Insertion-layer lookup.

The same tiered policy exists twice: `find_layer` runs in-process against a
parsed LayerTree, and `LAYER_LOCATOR_JS` is injected into the remote editor
page where it walks the editor's live `layers` collections. Both traverse
pre-order, top-most layer first, and try the tiers in this order:

1. exact, case-sensitive name
2. case-insensitive exact name
3. case-insensitive substring, in either direction

The first tier with any match wins; within a tier the first node visited
wins. Keep the two implementations in step.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, TypeVar

from mockup_service.models.mockups import LayerNode, LayerTree


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _exact(name: str, candidate: str) -> bool:
    return name == candidate


def _case_insensitive(name: str, candidate: str) -> bool:
    return name.lower() == candidate.lower()


def _substring(name: str, candidate: str) -> bool:
    if not name or not candidate:
        return False
    lowered, wanted = name.lower(), candidate.lower()
    return wanted in lowered or lowered in wanted


MATCH_TIERS: List[Callable[[str, str], bool]] = [_exact, _case_insensitive, _substring]


def match_in_order(items: Iterable[T], candidate: str, name_of: Callable[[T], str]) -> Optional[T]:
    """
    Apply the tiered policy to an already-ordered sequence of items.

    Split out from `find_layer` so that anything flattened into traversal
    order (including plain dicts in tests) can be matched the same way.
    """
    ordered = list(items)
    for tier, matches in enumerate(MATCH_TIERS, start=1):
        for item in ordered:
            if matches(name_of(item) or "", candidate):
                logger.debug("Layer %r matched %r at tier %d", name_of(item), candidate, tier)
                return item
    return None


def find_layer(tree: LayerTree, candidate: str) -> LayerNode | None:
    """Return the best-matching layer for `candidate`, or None."""
    node = match_in_order(tree.walk(), candidate, lambda n: n.name)
    if node is None:
        logger.info("No layer matching %r among %d layers", candidate, len(tree))
    return node


# Evaluated inside the editor page. Defines `findLayerByName(layers, name)`
# which walks `layer.layers` for groups.
LAYER_LOCATOR_JS = r"""
function findLayerByName(rootLayers, candidate) {
    var ordered = [];
    (function walk(layers) {
        if (!layers) { return; }
        for (var i = 0; i < layers.length; i++) {
            ordered.push(layers[i]);
            if (layers[i].layers && layers[i].layers.length > 0) {
                walk(layers[i].layers);
            }
        }
    })(rootLayers);

    var wanted = String(candidate);
    var wantedLower = wanted.toLowerCase();
    var tiers = [
        function (name) { return name === wanted; },
        function (name) { return name.toLowerCase() === wantedLower; },
        function (name) {
            if (!name || !wanted) { return false; }
            var lowered = name.toLowerCase();
            return lowered.indexOf(wantedLower) !== -1 || wantedLower.indexOf(lowered) !== -1;
        }
    ];

    for (var t = 0; t < tiers.length; t++) {
        for (var j = 0; j < ordered.length; j++) {
            if (tiers[t](String(ordered[j].name || ""))) {
                return ordered[j];
            }
        }
    }
    return null;
}
"""
