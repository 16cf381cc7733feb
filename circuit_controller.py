"""
circuit_controller.py

Interaction controller for one circuit diagram.

The controller owns a diagram's tree, graph, positions and assignment, and
moves through four states:

    IDLE        no tree loaded
    BUILDING    layout requested for the current tree
    READY       positions fixed; toggles re-evaluate without a new layout
    TERMINATED  view torn down; nothing is applied any more

Transitions:
    IDLE/BUILDING/READY -> BUILDING   load(index) with a valid index
    BUILDING -> READY                 layout resolved and still current
    BUILDING -> IDLE                  layout failed
    any -> TERMINATED                 teardown()

Toggling a variable only replaces the assignment and re-runs evaluation;
positions stay fixed for the lifetime of a tree.
"""

import sys

from circuit_core import (
    DiagramGraph, FIRST_SEEN,
    normalize_tree, extract_variables, build_graph,
    default_assignment, toggle_assignment,
    evaluate_diagram, neutral_result,
    TreeFormatError,
)
from circuit_engine import EngineError, get_engine_handle
from circuit_layout import LayoutError, LayoutOrchestrator, Liveness


IDLE = 'idle'
BUILDING = 'building'
READY = 'ready'
TERMINATED = 'terminated'

INVALID_INDEX_TEXT = 'Invalid index'


class DiagramController:
    """
    Drives one diagram instance.

    Args:
        engine: expression engine (count / get_expression_tree / evaluate)
        orchestrator: LayoutOrchestrator; a default one is created if omitted
        on_change: optional callback(controller) after every state change
        center_viewport: optional callback(controller), called once after
                         each successful layout
        on_teardown: optional callback() run once by teardown()
        ordering: variable ordering passed to extract_variables
    """

    def __init__(self, engine, orchestrator=None, on_change=None, center_viewport=None,
                 on_teardown=None, ordering=FIRST_SEEN):
        self.engine = engine
        self.orchestrator = orchestrator if orchestrator is not None else LayoutOrchestrator()
        self.on_change = on_change
        self.center_viewport = center_viewport
        self.on_teardown = on_teardown
        self.ordering = ordering

        self.state = IDLE
        self.index = None
        self.text = None
        self.tree = None
        self.variables = []
        self.graph = DiagramGraph()
        self.assignment = {}
        self.evaluation = None
        self.error = None
        self.viewport_revision = 0
        self._liveness = None

    # ---- loading ------------------------------------------------------------

    async def load(self, index):
        """
        Replace the current tree with the expression at an index.

        Returns:
            True if the new diagram reached READY, False if the index was
            invalid, the layout failed, or a newer load superseded this one
        """
        if self.state == TERMINATED:
            return False

        if self._liveness is not None:
            self._liveness.revoke()
        liveness = Liveness()
        self._liveness = liveness

        try:
            text, raw_tree = self.engine.get_expression_tree(index)
            tree = normalize_tree(raw_tree)
        except (EngineError, TreeFormatError) as e:
            print(f"Cannot load expression {index}: {e}", file=sys.stderr)
            self._reset(index, INVALID_INDEX_TEXT)
            self.error = str(e)
            self._changed()
            return False

        self._reset(index, text)
        self.tree = tree
        self.variables = extract_variables(tree, self.ordering)
        self.graph = build_graph(tree)
        self.assignment = default_assignment(self.variables)
        self.state = BUILDING
        self._changed()

        try:
            positions = await self.orchestrator.request_layout(self.graph, liveness)
        except LayoutError as e:
            if not liveness.alive:
                return False
            print(f"Layout failed for expression {index}: {e}", file=sys.stderr)
            self._reset(index, self.text)
            self.error = str(e)
            self._changed()
            return False

        if positions is None or not liveness.alive:
            return False

        self.graph.apply_positions(positions)
        self.state = READY
        self.viewport_revision += 1
        if self.center_viewport is not None:
            self.center_viewport(self)
        self._evaluate()
        self._changed()
        return True

    def _reset(self, index, text):
        self.index = index
        self.text = text
        self.tree = None
        self.variables = []
        self.graph = DiagramGraph()
        self.assignment = {}
        self.evaluation = None
        self.error = None
        self.state = IDLE

    # ---- interaction ----------------------------------------------------------

    def toggle(self, name):
        """
        Flip one variable.

        The assignment is replaced by a new dict. Evaluation runs right away
        when the diagram is READY; while BUILDING it runs once the layout
        lands, using whatever the assignment is by then.
        Outside BUILDING and READY there is no diagram and nothing changes.

        Returns:
            the new assignment
        """
        if self.state not in (BUILDING, READY):
            return self.assignment
        self.assignment = toggle_assignment(self.assignment, name)
        if self.state == READY:
            self._evaluate()
        self._changed()
        return self.assignment

    def is_click_toggleable(self, node):
        """
        A node toggles on click when it is a leaf below some operator and
        names a known variable. A tree made of a single variable is only
        toggleable from the control strip.
        """
        return (node.is_leaf and node.has_incoming_edge
                and node.label in self.assignment)

    def handle_node_click(self, event):
        """
        Handle a click on a diagram node.

        Args:
            event: dict with 'id', 'label', 'kind', 'has_incoming_edge',
                   'has_outgoing_edge' (see click_event_from_point)

        Returns:
            True if a variable was toggled
        """
        if self.state == TERMINATED or not event:
            return False
        try:
            node = self.graph.node(event['id'])
        except KeyError:
            return False
        if node.label != event.get('label') or not self.is_click_toggleable(node):
            return False
        self.toggle(node.label)
        return True

    def _evaluate(self):
        if not self.graph.nodes:
            self.evaluation = None
            return
        self.evaluation = evaluate_diagram(self.engine, self.index, self.graph, self.assignment)

    # ---- derived views --------------------------------------------------------

    @property
    def styles(self):
        if self.evaluation is None:
            return neutral_result(self.graph).styles
        return self.evaluation.styles

    @property
    def truth_table_row(self):
        return self.evaluation.row if self.evaluation is not None else None

    @property
    def output(self):
        return self.evaluation.output if self.evaluation is not None else None

    # ---- teardown ---------------------------------------------------------------

    def teardown(self):
        """Stop applying in-flight results and release resources."""
        if self.state == TERMINATED:
            return
        if self._liveness is not None:
            self._liveness.revoke()
        self.state = TERMINATED
        if self.on_teardown is not None:
            self.on_teardown()

    def _changed(self):
        if self.on_change is not None:
            self.on_change(self)

    # ---- snapshots ----------------------------------------------------------------

    def snapshot(self):
        """JSON-safe description of this diagram (used by the Dash app)."""
        return {
            'index': self.index,
            'text': self.text,
            'tree': self.tree.to_json() if self.tree is not None else None,
            'variables': list(self.variables),
            'graph': self.graph.to_dict(),
            'assignment': dict(self.assignment),
            'state': self.state,
            'error': self.error,
            'viewport_revision': self.viewport_revision,
        }

    @classmethod
    def from_snapshot(cls, engine, data, evaluate=True, **kwargs):
        """
        Rebuild a controller from snapshot().

        Positions come from the snapshot; no layout is requested. A READY
        snapshot is re-evaluated under its stored assignment unless
        evaluate is False (callers about to toggle skip the extra pass).
        """
        controller = cls(engine, **kwargs)
        controller.index = data.get('index')
        controller.text = data.get('text')
        if data.get('tree') is not None:
            controller.tree = normalize_tree(data['tree'])
        controller.variables = list(data.get('variables', []))
        controller.graph = DiagramGraph.from_dict(data.get('graph', {}))
        controller.assignment = dict(data.get('assignment', {}))
        controller.error = data.get('error')
        controller.viewport_revision = data.get('viewport_revision', 0)

        state = data.get('state', IDLE)
        if state == READY and not controller.graph.is_laid_out:
            state = IDLE
        controller.state = state if state in (IDLE, READY) else IDLE
        if evaluate and controller.state == READY:
            controller._evaluate()
        return controller


async def create_controller(handle=None, **kwargs):
    """
    Create a controller backed by the shared engine handle.

    The handle reference is released when the controller is torn down.
    """
    handle = handle if handle is not None else get_engine_handle()
    engine = await handle.acquire()
    return DiagramController(engine, on_teardown=handle.release, **kwargs)
