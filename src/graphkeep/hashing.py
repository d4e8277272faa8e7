"""
Content hashing for workspace state deduplication.

Only the semantically relevant part of a workspace is hashed: graphs,
node prototypes and edges. Each graph's viewport is folded in after
rounding, so panning by a fraction of a pixel does not count as an edit.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Mapping, Set
from typing import Any

logger = logging.getLogger("graphkeep.hashing")

PAN_DECIMALS = 2
ZOOM_DECIMALS = 4


def _round(value: Any, decimals: int, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    # + 0.0 folds -0.0 into 0.0
    return round(float(value), decimals) + 0.0


def _entries(collection: Any) -> list:
    if collection is None:
        return []
    if isinstance(collection, Mapping):
        return [[str(k), v] for k, v in collection.items()]
    return list(collection)


def _graph_entry(graph: Any) -> dict[str, Any]:
    graph = dict(graph) if isinstance(graph, Mapping) else {"value": graph}
    pan = graph.pop("pan_offset", None) or {}
    zoom = graph.pop("zoom_level", None)
    graph["__view"] = {
        "x": _round(pan.get("x") if isinstance(pan, Mapping) else None, PAN_DECIMALS, 0.0),
        "y": _round(pan.get("y") if isinstance(pan, Mapping) else None, PAN_DECIMALS, 0.0),
        "zoom": _round(zoom, ZOOM_DECIMALS, 1.0),
    }
    return graph


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Set):
        return sorted(obj, key=repr)
    if isinstance(obj, tuple):
        return list(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    raise TypeError(f"Unhashable state value of type {type(obj).__name__}")


def content_view(state: Mapping[str, Any]) -> dict[str, Any]:
    """Project a workspace state onto the part that is hashed."""
    graphs = state.get("graphs")
    if isinstance(graphs, Mapping):
        graphs = [[str(gid), _graph_entry(g)] for gid, g in graphs.items()]
    else:
        graphs = [_graph_entry(g) for g in graphs or []]
    return {
        "graphs": graphs,
        "node_prototypes": _entries(state.get("node_prototypes")),
        "edges": _entries(state.get("edges")),
    }


def state_hash(state: Mapping[str, Any]) -> str:
    """Compute a stable content hash for a workspace state.

    Args:
        state: Workspace snapshot with ``graphs``, ``node_prototypes`` and
            ``edges`` collections.

    Returns:
        Hex SHA-256 digest. If the state cannot be serialized a random
        value is returned so the change is saved rather than dropped.
    """
    try:
        content = json.dumps(
            content_view(state),
            sort_keys=True,
            separators=(",", ":"),
            default=_json_default,
        )
    except (TypeError, ValueError) as exc:
        logger.warning("Hash generation failed: %s", exc)
        return f"unhashable-{uuid.uuid4().hex}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
