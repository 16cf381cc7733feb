"""
circuit_engine.py

Reference expression engine: a ranked enumeration of boolean expressions.

Every expression built from variable leaves, NOT, and the binary operators
AND, OR, XOR has a unique non-negative index. Expressions are ranked by:
1. total number of operator nodes (NOT and binary)
2. number of NOT nodes, most first
3. tree shape, then one operator choice per binary node (base 3, pre-order),
   then the labelling of the leaves as a restricted growth string

Leaves are labelled A, B, ..., Z, AA, AB, ... in order of first appearance,
so two expressions that only rename variables share one index.

The engine answers the four calls the diagram core depends on: count(),
get_expression_text(), get_expression_tree() and evaluate(). Trees are
returned in the raw wire shape (bare strings for leaves, tagged dicts for
operators); evaluate() numbers nodes in pre-order with "n0" as the root.

Also provides EngineHandle, a reference-counted handle that builds the
engine once and shares it between every diagram that needs it.
"""

import asyncio
import bisect
import json
import operator
import sys


# ============================================================================
# SECTION 0: ERRORS
# ============================================================================

class EngineError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def __repr__(self):
        return f"{type(self).__name__}: {self.message}"


class InvalidIndexError(EngineError):
    """Raised for an index that is not a valid expression index."""


# ============================================================================
# SECTION 1: COUNTING TABLES
# ============================================================================

MAX_LEAVES = 18
MAX_UNARY = 18

BINARY_OPERATORS = ('AND', 'OR', 'XOR')

_APPLY = {
    'AND': operator.and_,
    'OR': operator.or_,
    'XOR': operator.xor,
}


def bell_numbers(max_n):
    """Bell numbers B[0..max_n] via the Bell triangle."""
    bell = [1] * (max_n + 1)
    row = [1]
    for n in range(1, max_n + 1):
        next_row = [row[-1]]
        for value in row:
            next_row.append(next_row[-1] + value)
        bell[n] = next_row[0]
        row = next_row
    return bell


def shape_counts(max_leaves, max_unary):
    """
    Count tree shapes.

    Returns:
        C where C[s][u] is the number of shapes with s leaves and u NOT nodes
        (C[0][*] is unused and stays 0)
    """
    C = [[0] * (max_unary + 1) for _ in range(max_leaves + 1)]
    for s in range(1, max_leaves + 1):
        for u in range(max_unary + 1):
            total = 1 if (s == 1 and u == 0) else 0
            if u > 0:
                total += C[s][u - 1]
            for ls in range(1, s):
                rs = s - ls
                for u1 in range(u + 1):
                    total += C[ls][u1] * C[rs][u - u1]
            C[s][u] = total
    return C


def rgs_counts(max_len):
    """
    Restricted growth string completion counts.

    Returns:
        D where D[k][m] is the number of ways to append k more values to a
        restricted growth string whose current maximum is m
    """
    D = [[0] * (max_len + 2) for _ in range(max_len + 1)]
    D[0] = [1] * (max_len + 2)
    for k in range(1, max_len + 1):
        for m in range(max_len + 1):
            D[k][m] = (m + 1) * D[k - 1][m] + D[k - 1][m + 1]
    return D


def variable_label(i):
    """0 -> 'A', 25 -> 'Z', 26 -> 'AA', ..."""
    chars = []
    while True:
        chars.append(chr(ord('A') + i % 26))
        i = i // 26 - 1
        if i < 0:
            break
    return ''.join(reversed(chars))


# ============================================================================
# SECTION 2: EXPRESSION ENGINE
# ============================================================================

class ExpressionEngine:
    """
    Ranked enumeration of boolean expressions with per-node evaluation.

    Building the counting tables is the expensive step; share one engine
    through EngineHandle rather than constructing it per diagram.
    """

    def __init__(self, max_leaves=MAX_LEAVES, max_unary=MAX_UNARY):
        self.max_leaves = max_leaves
        self.max_unary = max_unary
        self.max_size = max_leaves - 1 + max_unary

        self._bell = bell_numbers(max_leaves)
        self._shapes = shape_counts(max_leaves, max_unary)
        self._rgs = rgs_counts(max_leaves)

        # _prefix[n] = number of expressions with at most n operator nodes
        self._prefix = []
        total = 0
        for n in range(self.max_size + 1):
            total += sum(count for _, _, count in self._size_blocks(n))
            self._prefix.append(total)

    def _size_blocks(self, n):
        """Yield (leaves, unary, count) blocks for size n, most NOT nodes first."""
        for u in range(n, -1, -1):
            s = n - u + 1
            if s > self.max_leaves or u > self.max_unary:
                continue
            yield s, u, self._shapes[s][u] * 3 ** (s - 1) * self._bell[s]

    # ---- contract -----------------------------------------------------------

    def count(self):
        """Total number of available expressions"""
        return self._prefix[-1]

    def get_expression_text(self, index):
        text, _ = self.get_expression_tree(index)
        return text

    def get_expression_tree(self, index):
        """
        Get the expression at an index.

        Args:
            index: int or decimal string

        Returns:
            (text, tree) where tree is in the raw wire shape

        Raises:
            InvalidIndexError: for non-numeric or out-of-range indices
        """
        shape, op_index, labels = self._unrank(self._parse_index(index))
        tree = _emit_tree(shape, op_index, labels)
        return tree_text(tree), tree

    def evaluate(self, index, assignment):
        """
        Evaluate every node of the expression at an index.

        Args:
            index: int or decimal string
            assignment: JSON string or mapping of variable name -> bool

        Returns:
            JSON string mapping node id ("n0" = root, pre-order) -> bool.
            Nodes whose value depends on a variable missing from the
            assignment are left out.
        """
        if isinstance(assignment, (str, bytes)):
            assignment = json.loads(assignment)
        _, tree = self.get_expression_tree(index)
        return json.dumps(evaluate_tree(tree, assignment))

    # ---- unranking ----------------------------------------------------------

    def _parse_index(self, index):
        if isinstance(index, bool):
            raise InvalidIndexError(f"Invalid index: {index!r}")
        if isinstance(index, str):
            index = index.strip()
            if not index.isdecimal():
                raise InvalidIndexError(f"Invalid index: {index!r}")
            index = int(index)
        if not isinstance(index, int) or not 0 <= index < self.count():
            raise InvalidIndexError(f"Invalid index: {index!r}")
        return index

    def _unrank(self, index):
        n = bisect.bisect_right(self._prefix, index)
        rem = index - (self._prefix[n - 1] if n else 0)

        for s, u, block in self._size_blocks(n):
            if rem < block:
                break
            rem -= block
        else:
            raise InvalidIndexError(f"Invalid index: {index}")

        per_shape = 3 ** (s - 1) * self._bell[s]
        shape_index, rem = divmod(rem, per_shape)
        op_index, rgs_index = divmod(rem, self._bell[s])
        return self._unrank_shape(s, u, shape_index), op_index, self._unrank_rgs(s, rgs_index)

    def _unrank_shape(self, s, u, k):
        """Pre-order shape signature: L = leaf, U = NOT, B = binary."""
        C = self._shapes
        if s == 1 and u == 0:
            return 'L'
        if u > 0:
            if k < C[s][u - 1]:
                return 'U' + self._unrank_shape(s, u - 1, k)
            k -= C[s][u - 1]
        for ls in range(1, s):
            rs = s - ls
            for u1 in range(u + 1):
                block = C[ls][u1] * C[rs][u - u1]
                if k < block:
                    left, right = divmod(k, C[rs][u - u1])
                    return 'B' + self._unrank_shape(ls, u1, left) + self._unrank_shape(rs, u - u1, right)
                k -= block
        raise EngineError(f"Shape rank out of range: s={s}, u={u}")

    def _unrank_rgs(self, length, k):
        values = []
        current_max = -1
        for i in range(length):
            remaining = length - i - 1
            for v in range(current_max + 2):
                count = self._rgs[remaining][max(current_max, v)]
                if k < count:
                    values.append(v)
                    current_max = max(current_max, v)
                    break
                k -= count
        return values


def _emit_tree(shape, op_index, labels):
    """Build the raw tree from a shape signature, operator digits and leaf labels."""
    shape_pos = 0
    leaf_pos = 0

    def build():
        nonlocal shape_pos, leaf_pos, op_index
        token = shape[shape_pos]
        shape_pos += 1
        if token == 'L':
            name = variable_label(labels[leaf_pos])
            leaf_pos += 1
            return name
        if token == 'U':
            return {'type': 'NOT', 'child': build()}
        op_index, digit = divmod(op_index, 3)
        kind = BINARY_OPERATORS[digit]
        left = build()
        right = build()
        return {'type': kind, 'left': left, 'right': right}

    return build()


def tree_text(tree):
    """Render a raw tree as text, e.g. AND(A,NOT(B))"""
    if isinstance(tree, str):
        return tree
    if tree['type'] == 'NOT':
        return f"NOT({tree_text(tree['child'])})"
    return f"{tree['type']}({tree_text(tree['left'])},{tree_text(tree['right'])})"


def evaluate_tree(tree, assignment):
    """
    Evaluate a raw tree node by node.

    Args:
        tree: raw wire-shape tree
        assignment: mapping variable name -> bool

    Returns:
        dict "n<i>" -> bool, numbered in pre-order; undecidable nodes omitted
    """
    values = {}
    counter = 0

    def visit(node):
        nonlocal counter
        node_id = f"n{counter}"
        counter += 1
        if isinstance(node, str):
            value = assignment.get(node)
            value = None if value is None else bool(value)
        elif node['type'] == 'NOT':
            child = visit(node['child'])
            value = None if child is None else not child
        else:
            left = visit(node['left'])
            right = visit(node['right'])
            value = None if left is None or right is None else _APPLY[node['type']](left, right)
        if value is not None:
            values[node_id] = value
        return value

    visit(tree)
    return values


# ============================================================================
# SECTION 3: SHARED ENGINE HANDLE
# ============================================================================

class EngineHandle:
    """
    Reference-counted, lazily built expression engine.

    The first acquire() builds the engine on a worker thread; acquirers that
    arrive while it is building wait on the same load. When the last holder
    calls release() the engine is dropped and the next acquire() builds a
    fresh one.
    """

    def __init__(self, factory=ExpressionEngine, verbose=False):
        self._factory = factory
        self._engine = None
        self._loading = None
        self._refcount = 0
        self.verbose = verbose

    @property
    def refcount(self):
        return self._refcount

    @property
    def is_loaded(self):
        return self._engine is not None

    async def acquire(self):
        """Take a reference and return the (possibly freshly built) engine."""
        self._refcount += 1
        try:
            return await self._load()
        except BaseException:
            self._refcount -= 1
            raise

    async def _load(self):
        if self._engine is not None:
            return self._engine
        if self._loading is None:
            if self.verbose:
                print("Building expression engine...", file=sys.stderr)
            self._loading = asyncio.ensure_future(asyncio.to_thread(self._factory))
        loading = self._loading
        try:
            engine = await asyncio.shield(loading)
        except Exception:
            if self._loading is loading:
                self._loading = None
            raise
        if self._loading is loading:
            self._engine = engine
            self._loading = None
        return engine

    def release(self):
        """Drop a reference; the engine is torn down with the last one."""
        if self._refcount == 0:
            raise RuntimeError("EngineHandle released more times than acquired")
        self._refcount -= 1
        if self._refcount == 0:
            self.teardown()

    def teardown(self):
        if self._loading is not None and not self._loading.done():
            self._loading.cancel()
        self._loading = None
        self._engine = None
        if self.verbose:
            print("Expression engine released", file=sys.stderr)


# Global engine handle (module-level)
_engine_handle = None


def get_engine_handle():
    """Get the shared engine handle, creating it if needed."""
    global _engine_handle
    if _engine_handle is None:
        _engine_handle = EngineHandle()
    return _engine_handle


def reset_engine_handle():
    """Tear down and forget the shared handle (re-created on next access)."""
    global _engine_handle
    if _engine_handle is not None:
        _engine_handle.teardown()
    _engine_handle = None
