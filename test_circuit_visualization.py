"""
test_circuit_visualization.py

Tests for figure building, click routing, exports and the Dash app helpers.
"""

import csv

import pytest
from dash import Dash, html, dcc, no_update
from dash.exceptions import PreventUpdate

from circuit_core import build_graph, STYLE_TRUE, STYLE_FALSE, STYLE_NEUTRAL
from circuit_controller import DiagramController, READY, IDLE
from circuit_engine import ExpressionEngine
from circuit_layout import layered_layout
from circuit_visualization import (
    STYLE_COLORS, create_plotly_graph, click_event_from_point,
    export_to_dot, export_expressions_to_csv,
)
from circuit_notebook_apps import (
    parse_path, load_controller, apply_interaction, toggle_button_content,
    output_text, truth_table, home_layout, expression_layout, create_circuit_app,
    diagram_update,
)


TREE = {'type': 'AND', 'left': 'A', 'right': {'type': 'NOT', 'child': 'B'}}


@pytest.fixture(scope='module')
def engine():
    return ExpressionEngine(max_leaves=4, max_unary=4)


@pytest.fixture
def laid_out_graph():
    graph = build_graph(TREE)
    graph.apply_positions(layered_layout(graph))
    return graph


def find_by_id(component, target):
    """Depth-first search of a Dash component tree by id."""
    if getattr(component, 'id', None) == target:
        return component
    children = getattr(component, 'children', None)
    if children is None:
        return None
    if not isinstance(children, (list, tuple)):
        children = [children]
    for child in children:
        found = find_by_id(child, target)
        if found is not None:
            return found
    return None


# ---- figure -------------------------------------------------------------------

def test_create_plotly_graph(laid_out_graph):
    styles = {'n0': STYLE_FALSE, 'n1': STYLE_TRUE, 'n2': STYLE_FALSE, 'n3': STYLE_TRUE}
    fig = create_plotly_graph(laid_out_graph, styles, title='AND(A,NOT(B))', uirevision='16-1')

    edge_trace, node_trace = fig.data
    assert list(node_trace.text) == ['AND', 'A', 'NOT', 'B']
    assert list(node_trace.customdata[3]) == ['n3', 'B', 'leaf', True, False]
    # three edges, each drawn as a segment plus a None separator
    assert len(edge_trace.x) == 9

    fills = [shape.fillcolor for shape in fig.layout.shapes]
    assert fills == [STYLE_COLORS[styles[nid]] for nid in laid_out_graph.node_ids()]
    assert fig.layout.uirevision == '16-1'
    assert fig.layout.title.text == 'AND(A,NOT(B))'


def test_create_plotly_graph_defaults_to_neutral(laid_out_graph):
    fig = create_plotly_graph(laid_out_graph)
    assert {shape.fillcolor for shape in fig.layout.shapes} == {STYLE_COLORS[STYLE_NEUTRAL]}


def test_click_event_from_point():
    click = {'points': [{'customdata': ['n3', 'B', 'leaf', True, False]}]}
    assert click_event_from_point(click) == {
        'id': 'n3', 'label': 'B', 'kind': 'leaf',
        'has_incoming_edge': True, 'has_outgoing_edge': False,
    }
    assert click_event_from_point(None) is None
    assert click_event_from_point({'points': []}) is None
    assert click_event_from_point({'points': [{'x': 1, 'y': 2}]}) is None


# ---- exports ------------------------------------------------------------------

def test_export_to_dot(laid_out_graph, tmp_path):
    dot = export_to_dot(laid_out_graph, styles={'n1': STYLE_TRUE})
    assert dot.startswith('digraph G {')
    assert '"n2" -> "n3";' in dot
    assert f'"n1" [label="A", fillcolor="{STYLE_COLORS[STYLE_TRUE]}"];' in dot
    assert f'"n0" [label="AND", fillcolor="{STYLE_COLORS[STYLE_NEUTRAL]}"];' in dot

    path = tmp_path / 'circuit.dot'
    assert export_to_dot(laid_out_graph, str(path)) is None
    assert path.read_text().count('->') == 3


def test_export_expressions_to_csv(engine, tmp_path):
    path = tmp_path / 'expressions.csv'
    export_expressions_to_csv(engine, str(path), start=0, stop=8)
    with open(path, newline='') as f:
        rows = list(csv.reader(f))
    assert rows[0] == ['Index', 'Expression', 'Nodes', 'Variables']
    assert len(rows) == 9
    assert rows[1] == ['0', 'A', '1', '1']
    assert rows[4] == ['3', 'AND(A,B)', '3', '2']


def test_export_expressions_to_csv_clips_range(engine, tmp_path):
    path = tmp_path / 'tail.csv'
    total = engine.count()
    export_expressions_to_csv(engine, str(path), start=total - 2, stop=total + 10)
    with open(path, newline='') as f:
        rows = list(csv.reader(f))
    assert [row[0] for row in rows[1:]] == [str(total - 2), str(total - 1)]


# ---- app helpers ------------------------------------------------------------------

@pytest.mark.parametrize('pathname, expected', [
    ('/42', '42'), ('/0', '0'), ('/', None), (None, None), ('/abc', None), ('/-1', None),
])
def test_parse_path(pathname, expected):
    assert parse_path(pathname) == expected


def test_load_controller(engine):
    controller = load_controller(engine, '16')
    assert controller.state == READY
    assert controller.text == 'AND(A,NOT(B))'
    assert output_text(controller) == 'Output: false'

    invalid = load_controller(engine, str(engine.count()))
    assert invalid.state == IDLE


def test_apply_interaction_toggle_button(engine):
    snapshot = load_controller(engine, 16).snapshot()
    controller, changed = apply_interaction(engine, snapshot, {'type': 'var-toggle', 'index': 'B'})
    assert changed
    assert controller.assignment == {'A': True, 'B': False}
    assert controller.output is True
    # positions come from the stored snapshot, not a new layout
    assert controller.graph.positions() == DiagramController.from_snapshot(engine, snapshot).graph.positions()

    _, changed = apply_interaction(engine, snapshot, {'type': 'var-toggle', 'index': 'Q'})
    assert not changed


def test_apply_interaction_diagram_click(engine):
    snapshot = load_controller(engine, 16).snapshot()
    leaf = {'points': [{'customdata': ['n1', 'A', 'leaf', True, False]}]}
    controller, changed = apply_interaction(engine, snapshot, 'diagram-graph', leaf)
    assert changed
    assert controller.assignment['A'] is False

    operator_node = {'points': [{'customdata': ['n0', 'AND', 'internal', False, True]}]}
    _, changed = apply_interaction(engine, snapshot, 'diagram-graph', operator_node)
    assert not changed


def test_single_variable_click_is_ignored(engine):
    snapshot = load_controller(engine, 0).snapshot()
    click = {'points': [{'customdata': ['n0', 'A', 'leaf', False, False]}]}
    controller, changed = apply_interaction(engine, snapshot, 'diagram-graph', click)
    assert not changed
    assert controller.assignment == {'A': True}


def test_toggle_button_content(engine):
    controller = load_controller(engine, 16)
    controller.toggle('B')
    label, style = toggle_button_content(controller, 'B')
    assert label == 'B: OFF'
    assert style['backgroundColor'] == STYLE_COLORS[STYLE_FALSE]
    label, _ = toggle_button_content(controller, 'A')
    assert label == 'A: ON'


def test_truth_table(engine):
    controller = load_controller(engine, 16)
    table = truth_table(controller)
    assert isinstance(table, html.Table)

    empty = truth_table(DiagramController(engine))
    assert empty.children == "No result"


def test_page_layouts(engine):
    home = home_layout(engine)
    assert find_by_id(home, 'index-input') is not None

    page = expression_layout(engine, '16')
    assert isinstance(find_by_id(page, 'diagram-graph'), dcc.Graph)
    assert find_by_id(page, 'diagram-store').data['index'] == '16'
    strip = find_by_id(page, 'control-strip')
    assert [button.id for button in strip.children] == [
        {'type': 'var-toggle', 'index': 'A'}, {'type': 'var-toggle', 'index': 'B'}]

    invalid = expression_layout(engine, str(engine.count()))
    assert find_by_id(invalid, 'diagram-graph') is None


def test_create_circuit_app(engine):
    app = create_circuit_app(engine=engine)
    assert isinstance(app, Dash)
    assert app.title == 'CircFinity'


class CountingEngine:
    """Wraps an engine and counts evaluate calls."""

    def __init__(self, engine):
        self.engine = engine
        self.evaluations = 0

    def get_expression_tree(self, index):
        return self.engine.get_expression_tree(index)

    def evaluate(self, index, assignment):
        self.evaluations += 1
        return self.engine.evaluate(index, assignment)


def test_apply_interaction_evaluates_once(engine):
    counting = CountingEngine(engine)
    snapshot = load_controller(counting, 16).snapshot()
    counting.evaluations = 0

    apply_interaction(counting, snapshot, {'type': 'var-toggle', 'index': 'A'})
    assert counting.evaluations == 1


# ---- interaction callback ---------------------------------------------------------

def test_diagram_update_toggle_button(engine):
    snapshot = load_controller(engine, 16).snapshot()
    store, figure, click_data, labels, styles, output, table = diagram_update(
        engine, snapshot, {'type': 'var-toggle', 'index': 'B'}, 1, None, 2)

    assert store['assignment'] == {'A': True, 'B': False}
    assert click_data is None
    # button outputs follow the control strip order
    assert labels == ['A: ON', 'B: OFF']
    assert [s['backgroundColor'] for s in styles] == [STYLE_COLORS[STYLE_TRUE], STYLE_COLORS[STYLE_FALSE]]
    assert output == 'Output: true'
    assert isinstance(table, html.Table)
    assert figure.layout.uirevision == '16-1'


def test_diagram_update_leaf_click(engine):
    snapshot = load_controller(engine, 16).snapshot()
    click = {'points': [{'customdata': ['n1', 'A', 'leaf', True, False]}]}
    store, _, click_data, labels, _, output, _ = diagram_update(
        engine, snapshot, 'diagram-graph', click, click, 2)
    assert store['assignment'] == {'A': False, 'B': True}
    assert click_data is None
    assert labels == ['A: OFF', 'B: ON']
    assert output == 'Output: false'


def test_diagram_update_click_without_change_clears_click_data(engine):
    snapshot = load_controller(engine, 16).snapshot()
    click = {'points': [{'customdata': ['n0', 'AND', 'internal', False, True]}]}
    result = diagram_update(engine, snapshot, 'diagram-graph', click, click, 2)
    assert result == (no_update, no_update, None, [no_update] * 2, [no_update] * 2,
                      no_update, no_update)


@pytest.mark.parametrize('triggered, value, click_data', [
    (None, None, None),
    ('diagram-graph', None, None),
    ({'type': 'var-toggle', 'index': 'A'}, 0, None),
    ({'type': 'var-toggle', 'index': 'Q'}, 1, None),
])
def test_diagram_update_prevents_update(engine, triggered, value, click_data):
    snapshot = load_controller(engine, 16).snapshot()
    with pytest.raises(PreventUpdate):
        diagram_update(engine, snapshot, triggered, value, click_data, 2)


def test_diagram_update_without_store(engine):
    with pytest.raises(PreventUpdate):
        diagram_update(engine, None, {'type': 'var-toggle', 'index': 'A'}, 1, None, 2)
