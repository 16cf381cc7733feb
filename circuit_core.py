"""
circuit_core.py

Core data structures and operations for boolean circuit diagrams.

This module turns a boolean expression tree into the pieces an interactive
diagram needs:
- Expression trees are a tagged variant: Variable, Not, BinaryOp
- Raw engine trees (bare strings and tagged dicts) are normalized once, at load time
- Variables are extracted in a documented, deterministic order
- Trees are flattened into a node list and edge list with pre-order ids ("n0" is the root)
- Evaluation results from the expression engine are decoded into node styles
  and a single truth table row

The expression engine itself lives in circuit_engine.py; layout lives in
circuit_layout.py.
"""

import json
import sys

import networkx as nx


# ============================================================================
# SECTION 0: EXPRESSION TREES
# ============================================================================

OPERATORS = ('AND', 'OR', 'XOR')


class TreeFormatError(ValueError):
    """Raised when a raw expression tree does not have a recognised shape."""


class ExpressionNode:
    """
    Base class of the tagged expression variant.

    Nodes are immutable once built. Subclasses define `kind`, `label`
    and `children()`.
    """

    kind = None

    def children(self):
        return ()

    def is_leaf(self):
        return not self.children()

    def to_string(self):
        raise NotImplementedError

    def to_json(self):
        """Convert back to the engine's raw tree shape."""
        raise NotImplementedError

    def iter_preorder(self):
        """Yield every node of the tree, root first, left before right."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children()))

    def size(self):
        return sum(1 for _ in self.iter_preorder())

    def __repr__(self):
        return self.to_string()

    def __setattr__(self, name, value):
        if name in self.__dict__:
            raise AttributeError(f"{type(self).__name__} is immutable")
        super().__setattr__(name, value)


class Variable(ExpressionNode):
    """A variable leaf"""

    kind = 'VAR'

    def __init__(self, name):
        if not isinstance(name, str) or not name:
            raise TreeFormatError(f"Invalid variable name: {name!r}")
        self.name = name

    @property
    def label(self):
        return self.name

    def to_string(self):
        return self.name

    def to_json(self):
        return self.name

    def __eq__(self, other):
        return isinstance(other, Variable) and self.name == other.name

    def __hash__(self):
        return hash(('VAR', self.name))


class Not(ExpressionNode):
    """Negation of a single child"""

    kind = 'NOT'

    def __init__(self, child):
        if not isinstance(child, ExpressionNode):
            raise TreeFormatError(f"NOT child must be an expression, got {type(child).__name__}")
        self.child = child

    @property
    def label(self):
        return 'NOT'

    def children(self):
        return (self.child,)

    def to_string(self):
        return f"NOT({self.child.to_string()})"

    def to_json(self):
        return {'type': 'NOT', 'child': self.child.to_json()}

    def __eq__(self, other):
        return isinstance(other, Not) and self.child == other.child

    def __hash__(self):
        return hash(('NOT', self.child))


class BinaryOp(ExpressionNode):
    """A binary operator node (AND, OR or XOR)"""

    def __init__(self, kind, left, right):
        if kind not in OPERATORS:
            raise TreeFormatError(f"Unknown operator: {kind!r}")
        for child in (left, right):
            if not isinstance(child, ExpressionNode):
                raise TreeFormatError(f"{kind} operand must be an expression, got {type(child).__name__}")
        self.kind = kind
        self.left = left
        self.right = right

    @property
    def label(self):
        return self.kind

    def children(self):
        return (self.left, self.right)

    def to_string(self):
        return f"{self.kind}({self.left.to_string()},{self.right.to_string()})"

    def to_json(self):
        return {'type': self.kind, 'left': self.left.to_json(), 'right': self.right.to_json()}

    def __eq__(self, other):
        return (isinstance(other, BinaryOp) and self.kind == other.kind
                and self.left == other.left and self.right == other.right)

    def __hash__(self):
        return hash((self.kind, self.left, self.right))


def normalize_tree(raw):
    """
    Convert a raw engine tree into Variable / Not / BinaryOp nodes.

    Accepted raw shapes:
        "A"                                   -> Variable("A")
        {"type": "VAR", "value": "A"}         -> Variable("A")
        {"type": "NOT", "child": ...}         -> Not(...)
        {"type": "AND", "left": ..., "right": ...}  (also OR, XOR)

    Already-normalized nodes are returned unchanged.

    Raises:
        TreeFormatError: if any part of the tree has an unknown shape
    """
    if isinstance(raw, ExpressionNode):
        return raw

    # Post-order walk with an explicit stack; deep NOT chains must not
    # hit the interpreter recursion limit.
    built = []
    stack = [(raw, False)]
    while stack:
        item, children_done = stack.pop()
        if isinstance(item, ExpressionNode):
            built.append(item)
            continue
        if isinstance(item, str):
            built.append(Variable(item))
            continue
        if not isinstance(item, dict):
            raise TreeFormatError(f"Unexpected tree node: {item!r}")

        node_type = item.get('type')
        if node_type == 'VAR':
            keys = ('value',)
        elif node_type == 'NOT':
            keys = ('child',)
        elif node_type in OPERATORS:
            keys = ('left', 'right')
        else:
            raise TreeFormatError(f"Unknown node type: {node_type!r}")
        for key in keys:
            if key not in item:
                raise TreeFormatError(f"{node_type} node is missing {key!r}")

        if node_type == 'VAR':
            built.append(Variable(item['value']))
        elif children_done:
            children = built[-len(keys):]
            del built[-len(keys):]
            if node_type == 'NOT':
                built.append(Not(*children))
            else:
                built.append(BinaryOp(node_type, *children))
        else:
            stack.append((item, True))
            for key in reversed(keys):
                stack.append((item[key], False))
    return built[0]


# ============================================================================
# SECTION 1: VARIABLE EXTRACTION
# ============================================================================

# Ordering policies for extract_variables
FIRST_SEEN = 'first-seen'
LENGTH_LEX = 'length-lex'


def extract_variables(tree, ordering=FIRST_SEEN):
    """
    Collect the unique variable names referenced by a tree.

    Args:
        tree: ExpressionNode or raw engine tree (may be None or malformed)
        ordering: FIRST_SEEN keeps pre-order first appearance (the default);
                  LENGTH_LEX sorts shorter names first, then alphabetically

    Returns:
        list of variable names; empty for missing or malformed trees
    """
    if tree is None:
        return []
    try:
        root = normalize_tree(tree)
    except TreeFormatError:
        return []

    seen = set()
    names = []
    for node in root.iter_preorder():
        if isinstance(node, Variable) and node.name not in seen:
            seen.add(node.name)
            names.append(node.name)

    if ordering == LENGTH_LEX:
        names.sort(key=lambda name: (len(name), name))
    elif ordering != FIRST_SEEN:
        raise ValueError(f"Unknown variable ordering: {ordering}")
    return names


def default_assignment(variables):
    """Every variable starts out true."""
    return {name: True for name in variables}


def toggle_assignment(assignment, name):
    """
    Return a new assignment with one variable flipped.

    The input mapping is left untouched.

    Raises:
        KeyError: if the variable is not part of the assignment
    """
    if name not in assignment:
        raise KeyError(name)
    flipped = dict(assignment)
    flipped[name] = not flipped[name]
    return flipped


def serialize_assignment(assignment):
    """Serialize an assignment for the expression engine."""
    return json.dumps({name: bool(value) for name, value in assignment.items()})


# ============================================================================
# SECTION 2: DIAGRAM GRAPH
# ============================================================================

NODE_WIDTH = 140
NODE_HEIGHT = 90

LEAF = 'leaf'
INTERNAL = 'internal'


class GraphNode:
    """One diagram node: a subexpression with its size and (once laid out) position."""

    def __init__(self, node_id, label, kind, width=NODE_WIDTH, height=NODE_HEIGHT,
                 position=None, has_incoming_edge=False, has_outgoing_edge=False):
        self.id = node_id
        self.label = label
        self.kind = kind
        self.width = width
        self.height = height
        self.position = position
        self.has_incoming_edge = has_incoming_edge
        self.has_outgoing_edge = has_outgoing_edge

    @property
    def is_leaf(self):
        return self.kind == LEAF

    @property
    def size(self):
        return (self.width, self.height)

    def to_dict(self):
        return {
            'id': self.id,
            'label': self.label,
            'kind': self.kind,
            'width': self.width,
            'height': self.height,
            'position': list(self.position) if self.position is not None else None,
            'hasIncomingEdge': self.has_incoming_edge,
            'hasOutgoingEdge': self.has_outgoing_edge,
        }

    @classmethod
    def from_dict(cls, data):
        position = data.get('position')
        return cls(
            data['id'], data['label'], data['kind'],
            width=data.get('width', NODE_WIDTH),
            height=data.get('height', NODE_HEIGHT),
            position=tuple(position) if position is not None else None,
            has_incoming_edge=data.get('hasIncomingEdge', False),
            has_outgoing_edge=data.get('hasOutgoingEdge', False),
        )

    def __repr__(self):
        return f"GraphNode({self.id}, {self.label!r}, {self.kind})"


class GraphEdge:
    """A parent -> child edge; the id is always '{source}-{target}'."""

    def __init__(self, source_id, target_id):
        self.id = f"{source_id}-{target_id}"
        self.source_id = source_id
        self.target_id = target_id

    def to_dict(self):
        return {'id': self.id, 'sourceId': self.source_id, 'targetId': self.target_id}

    @classmethod
    def from_dict(cls, data):
        return cls(data['sourceId'], data['targetId'])

    def __eq__(self, other):
        return isinstance(other, GraphEdge) and self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"GraphEdge({self.id})"


class DiagramGraph:
    """
    Flat node list and edge list of one expression tree.

    Nodes are kept in pre-order, so nodes[0] is always the root "n0".
    """

    ROOT_ID = 'n0'

    def __init__(self, nodes=None, edges=None):
        self.nodes = list(nodes or [])
        self.edges = list(edges or [])
        self._by_id = {node.id: node for node in self.nodes}

    def __len__(self):
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def node(self, node_id):
        """Get the node with the given id (KeyError if unknown)"""
        return self._by_id[node_id]

    def node_ids(self):
        return [node.id for node in self.nodes]

    @property
    def root(self):
        return self._by_id.get(self.ROOT_ID)

    @property
    def is_laid_out(self):
        return bool(self.nodes) and all(node.position is not None for node in self.nodes)

    def positions(self):
        return {node.id: node.position for node in self.nodes}

    def apply_positions(self, positions):
        """
        Set every node's position.

        Args:
            positions: dict mapping node id -> (x, y); must cover every node
        """
        missing = [node.id for node in self.nodes if node.id not in positions]
        if missing:
            raise KeyError(f"No position for nodes: {missing}")
        for node in self.nodes:
            x, y = positions[node.id]
            node.position = (float(x), float(y))

    def clear_positions(self):
        for node in self.nodes:
            node.position = None

    def to_networkx(self):
        """Build a NetworkX DiGraph (parent -> child) carrying the node attributes."""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id, label=node.label, kind=node.kind,
                       width=node.width, height=node.height)
        for edge in self.edges:
            G.add_edge(edge.source_id, edge.target_id, id=edge.id)
        return G

    def to_dict(self):
        return {
            'nodes': [node.to_dict() for node in self.nodes],
            'edges': [edge.to_dict() for edge in self.edges],
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            [GraphNode.from_dict(n) for n in data.get('nodes', [])],
            [GraphEdge.from_dict(e) for e in data.get('edges', [])],
        )


def build_graph(tree, node_size=(NODE_WIDTH, NODE_HEIGHT)):
    """
    Flatten a tree into a DiagramGraph.

    Nodes are numbered in pre-order starting at "n0" for the root. This is
    the same numbering the expression engine uses for its evaluation
    results, so "n0" always carries the value of the whole expression.

    Args:
        tree: ExpressionNode or raw engine tree
        node_size: (width, height) given to every node

    Returns:
        DiagramGraph with n nodes and n - 1 edges
    """
    root = normalize_tree(tree)
    width, height = node_size
    nodes = []
    edges = []

    def walk(expr, parent_id):
        node_id = f"n{len(nodes)}"
        nodes.append(GraphNode(
            node_id, expr.label,
            LEAF if expr.is_leaf() else INTERNAL,
            width=width, height=height,
            has_incoming_edge=parent_id is not None,
            has_outgoing_edge=not expr.is_leaf(),
        ))
        if parent_id is not None:
            edges.append(GraphEdge(parent_id, node_id))
        for child in expr.children():
            walk(child, node_id)

    walk(root, None)
    return DiagramGraph(nodes, edges)


# ============================================================================
# SECTION 3: EVALUATION
# ============================================================================

STYLE_NEUTRAL = 'neutral'
STYLE_TRUE = 'true'
STYLE_FALSE = 'false'


class EvaluationDecodeError(ValueError):
    """Raised when an engine evaluation response cannot be decoded."""


class TruthTableRow:
    """The current assignment paired with the overall output (True, False or None)."""

    def __init__(self, inputs, output):
        self.inputs = dict(inputs)
        self.output = output

    def to_dict(self):
        return {'inputs': dict(self.inputs), 'output': self.output}

    def __eq__(self, other):
        return (isinstance(other, TruthTableRow)
                and self.inputs == other.inputs and self.output == other.output)

    def __repr__(self):
        return f"TruthTableRow({self.inputs}, output={self.output})"


class EvaluationResult:
    """
    Outcome of one evaluation pass.

    Attributes:
        values: dict node id -> bool (ids the engine could not decide are absent)
        styles: dict node id -> STYLE_NEUTRAL / STYLE_TRUE / STYLE_FALSE
        output: value of "n0", or None when unknown
        row: TruthTableRow, or None when evaluation failed
        error: failure message, or None
    """

    def __init__(self, values, styles, output, row, error=None):
        self.values = values
        self.styles = styles
        self.output = output
        self.row = row
        self.error = error

    @property
    def ok(self):
        return self.error is None

    def __eq__(self, other):
        return (isinstance(other, EvaluationResult)
                and self.values == other.values and self.styles == other.styles
                and self.output == other.output and self.row == other.row
                and self.error == other.error)

    def __repr__(self):
        return f"EvaluationResult(output={self.output}, row={self.row}, error={self.error!r})"


def node_style(value):
    """Map an evaluation value to a style class."""
    if value is None:
        return STYLE_NEUTRAL
    return STYLE_TRUE if value else STYLE_FALSE


def decode_evaluation(raw, node_ids):
    """
    Decode an engine evaluation response.

    Args:
        raw: JSON string (or already-decoded mapping) of node id -> bool
        node_ids: ids of the active graph

    Returns:
        dict node id -> bool

    Raises:
        EvaluationDecodeError: for non-JSON input, a non-object payload,
            non-boolean values or ids that are not in the graph
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise EvaluationDecodeError(f"Response is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise EvaluationDecodeError(f"Expected an object, got {type(raw).__name__}")

    known = set(node_ids)
    values = {}
    for node_id, value in raw.items():
        if node_id not in known:
            raise EvaluationDecodeError(f"Unknown node id: {node_id!r}")
        if not isinstance(value, bool):
            raise EvaluationDecodeError(f"Value for {node_id} is not a boolean: {value!r}")
        values[node_id] = value
    return values


def neutral_result(graph, error=None):
    """Result used when nothing can be shown: every node neutral, no row."""
    styles = {node_id: STYLE_NEUTRAL for node_id in graph.node_ids()}
    return EvaluationResult({}, styles, None, None, error)


def evaluate_diagram(engine, index, graph, assignment):
    """
    Evaluate the active expression under one assignment.

    Calls engine.evaluate(index, serialized assignment) and derives node
    styles and the truth table row. Never raises: any engine or decoding
    failure gives a neutral result with the row cleared.

    Args:
        engine: object implementing the expression engine contract
        index: expression index
        graph: DiagramGraph of the active tree
        assignment: dict variable name -> bool

    Returns:
        EvaluationResult
    """
    try:
        raw = engine.evaluate(index, serialize_assignment(assignment))
        values = decode_evaluation(raw, graph.node_ids())
    except Exception as e:
        print(f"Evaluation failed for expression {index}: {e}", file=sys.stderr)
        return neutral_result(graph, error=str(e))

    styles = {node_id: node_style(values.get(node_id)) for node_id in graph.node_ids()}
    output = values.get(DiagramGraph.ROOT_ID)
    return EvaluationResult(values, styles, output, TruthTableRow(assignment, output))
