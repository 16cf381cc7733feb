"""
circuit_layout.py

Layered (top-down) layout of diagram graphs.

The layout engine places each node in a layer by its depth and assigns x
coordinates so that siblings keep their left-to-right order and parents sit
centered above their children. Layout runs off the event loop; the
orchestrator checks a liveness flag when a result comes back, so a layout
requested for a tree that has since been replaced is thrown away instead of
being applied.
"""

import asyncio
import math
import sys

import networkx as nx


class LayoutError(Exception):
    """Raised when no usable positions could be computed."""


DIRECTIONS = ('DOWN', 'UP', 'RIGHT', 'LEFT')


class LayoutConfig:
    """
    Layered layout settings.

    Args:
        direction: 'DOWN' (root on top, the default), 'UP', 'RIGHT' or 'LEFT'
        node_spacing: gap between neighbouring nodes in the same layer
        layer_spacing: gap between consecutive layers
        edge_node_spacing: minimum gap kept between an edge and a node
    """

    def __init__(self, direction='DOWN', node_spacing=120, layer_spacing=120,
                 edge_node_spacing=20):
        if direction not in DIRECTIONS:
            raise ValueError(f"Unknown layout direction: {direction}")
        self.direction = direction
        self.node_spacing = node_spacing
        self.layer_spacing = layer_spacing
        self.edge_node_spacing = edge_node_spacing

    def to_dict(self):
        return {
            'direction': self.direction,
            'node_spacing': self.node_spacing,
            'layer_spacing': self.layer_spacing,
            'edge_node_spacing': self.edge_node_spacing,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(**data)

    def __repr__(self):
        return f"LayoutConfig({self.to_dict()})"


DEFAULT_LAYOUT_CONFIG = LayoutConfig()


def layered_layout(graph, config=DEFAULT_LAYOUT_CONFIG):
    """
    Compute a layered layout for a tree-shaped diagram.

    Layers are the topological generations of the graph (root in layer 0).
    Leaves get consecutive slots in depth-first order; every internal node
    is centered over its children, so edges never cross.

    Args:
        graph: DiagramGraph
        config: LayoutConfig

    Returns:
        dict mapping node id -> (x, y), the top-left corner of the node

    Raises:
        LayoutError: if the graph is empty or not a single rooted tree
    """
    G = graph.to_networkx()
    if G.number_of_nodes() == 0:
        raise LayoutError("Cannot lay out an empty graph")

    roots = [n for n in G.nodes() if G.in_degree(n) == 0]
    if len(roots) != 1 or not nx.is_arborescence(G):
        raise LayoutError("Layered layout expects a single rooted tree")
    root = roots[0]

    layers = {}
    for depth, generation in enumerate(nx.topological_generations(G)):
        for node in generation:
            layers[node] = depth

    # Slot width along the layer axis and step between layers
    horizontal = config.direction in ('DOWN', 'UP')
    along = max(G.nodes[n]['width' if horizontal else 'height'] for n in G.nodes())
    across = max(G.nodes[n]['height' if horizontal else 'width'] for n in G.nodes())
    slot = along + max(config.node_spacing, 2 * config.edge_node_spacing)
    step = across + config.layer_spacing

    centers = {}
    next_slot = 0
    for node in nx.dfs_postorder_nodes(G, root):
        children = list(G.successors(node))
        if children:
            centers[node] = sum(centers[c] for c in children) / len(children)
        else:
            centers[node] = next_slot * slot
            next_slot += 1

    positions = {}
    for node, center in centers.items():
        width = G.nodes[node]['width']
        height = G.nodes[node]['height']
        depth = layers[node] * step
        if config.direction in ('UP', 'LEFT'):
            depth = -depth

        if horizontal:
            positions[node] = (center - width / 2, depth - height / 2)
        else:
            positions[node] = (depth - width / 2, center - height / 2)

    # Shift so the drawing starts at (0, 0)
    min_x = min(x for x, _ in positions.values())
    min_y = min(y for _, y in positions.values())
    return {node: (x - min_x, y - min_y) for node, (x, y) in positions.items()}


class LayeredLayoutEngine:
    """Runs layered_layout on a worker thread so callers can await it."""

    async def layout(self, graph, config):
        return await asyncio.to_thread(layered_layout, graph, config)


class Liveness:
    """Flag telling an in-flight layout request whether its result is still wanted."""

    def __init__(self):
        self.alive = True

    def revoke(self):
        self.alive = False

    def __repr__(self):
        return f"Liveness(alive={self.alive})"


class LayoutOrchestrator:
    """
    Requests layouts from a layout engine and filters the results.

    Args:
        engine: object with a coroutine layout(graph, config) returning
                {node id: (x, y)}; defaults to LayeredLayoutEngine
        config: LayoutConfig
        verbose: if True, report discarded results on stderr
    """

    def __init__(self, engine=None, config=None, verbose=False):
        self.engine = engine if engine is not None else LayeredLayoutEngine()
        self.config = config if config is not None else DEFAULT_LAYOUT_CONFIG
        self.verbose = verbose

    async def request_layout(self, graph, liveness):
        """
        Lay out a graph.

        Args:
            graph: DiagramGraph to lay out (not modified)
            liveness: Liveness of the request; revoked when the tree is replaced

        Returns:
            dict node id -> (x, y), or None if the request went stale while
            the engine was working

        Raises:
            LayoutError: if the engine failed or returned incomplete positions
        """
        try:
            positions = await self.engine.layout(graph, self.config)
        except LayoutError:
            raise
        except Exception as e:
            raise LayoutError(f"Layout engine failed: {e}") from e

        if not liveness.alive:
            if self.verbose:
                print(f"Discarding stale layout for {len(graph)} nodes", file=sys.stderr)
            return None

        return validate_positions(graph, positions)


def validate_positions(graph, positions):
    """
    Check that a layout result covers every node with finite coordinates.

    Returns:
        dict node id -> (float x, float y)

    Raises:
        LayoutError: for missing nodes or unusable coordinates
    """
    if not isinstance(positions, dict):
        raise LayoutError(f"Layout result must be a dict, got {type(positions).__name__}")

    checked = {}
    for node_id in graph.node_ids():
        if node_id not in positions:
            raise LayoutError(f"Layout result has no position for {node_id}")
        try:
            x, y = positions[node_id]
            x, y = float(x), float(y)
        except (TypeError, ValueError) as e:
            raise LayoutError(f"Bad position for {node_id}: {positions[node_id]!r}") from e
        if not (math.isfinite(x) and math.isfinite(y)):
            raise LayoutError(f"Non-finite position for {node_id}: {(x, y)}")
        checked[node_id] = (x, y)
    return checked
