"""
circuit_visualization.py

Plotly-based rendering of laid-out circuit diagrams.

This module converts a DiagramGraph (with positions) plus per-node style
classes into an interactive Plotly figure. Nodes carry their id, label and
edge flags as customdata so click events can be routed back to the
controller. Also provides DOT and CSV exports.
"""

import csv

import plotly.graph_objects as go
from tqdm import tqdm

from circuit_core import STYLE_NEUTRAL, STYLE_TRUE, STYLE_FALSE, build_graph


STYLE_COLORS = {
    STYLE_NEUTRAL: '#eeeeee',
    STYLE_TRUE: '#d4edda',
    STYLE_FALSE: '#f8d7da',
}

STYLE_TEXT = {
    STYLE_NEUTRAL: '?',
    STYLE_TRUE: 'true',
    STYLE_FALSE: 'false',
}


def create_plotly_graph(graph,
                        styles=None,
                        title=None,
                        width=900,
                        height=700,
                        uirevision=None):
    """
    Create an interactive Plotly figure of a laid-out diagram.

    Args:
        graph: DiagramGraph whose nodes all have positions
        styles: dict node id -> style class (missing ids render neutral)
        title: Optional title for the figure
        width, height: figure size in pixels
        uirevision: kept across redraws of the same layout so zoom and pan
                    survive recoloring; change it to re-center the view

    Returns:
        plotly.graph_objects.Figure
    """
    styles = styles or {}

    edge_trace = create_edge_trace(graph)
    node_trace = create_node_trace(graph, styles)

    fig = go.Figure(data=[edge_trace, node_trace])
    fig.update_layout(
        title=dict(text=title or f"Circuit ({len(graph)} nodes)", font=dict(size=16)),
        showlegend=False,
        hovermode='closest',
        margin=dict(b=20, l=5, r=5, t=40),
        xaxis=dict(showgrid=False, zeroline=False, showticklabels=False),
        # layered layout grows downwards
        yaxis=dict(showgrid=False, zeroline=False, showticklabels=False,
                   autorange='reversed', scaleanchor='x'),
        plot_bgcolor='white',
        width=width,
        height=height,
        shapes=create_node_shapes(graph, styles),
        uirevision=uirevision,
    )
    return fig


def node_center(node):
    x, y = node.position
    return x + node.width / 2, y + node.height / 2


def create_edge_trace(graph):
    """
    Create Plotly trace for edges: straight lines from the bottom of the
    parent to the top of the child.
    """
    edge_x = []
    edge_y = []

    for edge in graph.edges:
        source = graph.node(edge.source_id)
        target = graph.node(edge.target_id)
        x0, y0 = node_center(source)
        x1, y1 = node_center(target)
        edge_x.extend([x0, x1, None])
        edge_y.extend([y0 + source.height / 2, y1 - target.height / 2, None])

    return go.Scatter(
        x=edge_x,
        y=edge_y,
        line=dict(width=1, color='#888'),
        hoverinfo='none',
        mode='lines'
    )


def create_node_trace(graph, styles):
    """
    Create Plotly trace for node labels and click targets.

    Each point's customdata is [id, label, kind, has_incoming_edge,
    has_outgoing_edge].
    """
    node_x = []
    node_y = []
    node_text = []
    hover_text = []
    customdata = []

    for node in graph.nodes:
        x, y = node_center(node)
        node_x.append(x)
        node_y.append(y)
        node_text.append(node.label)
        hover_text.append(create_hover_text(node, styles.get(node.id, STYLE_NEUTRAL)))
        customdata.append([node.id, node.label, node.kind,
                           node.has_incoming_edge, node.has_outgoing_edge])

    return go.Scatter(
        x=node_x,
        y=node_y,
        mode='markers+text',
        text=node_text,
        textposition='middle center',
        textfont=dict(size=20, color='black'),
        hoverinfo='text',
        hovertext=hover_text,
        customdata=customdata,
        # transparent markers only serve as click targets; the boxes are layout shapes
        marker=dict(size=40, color='rgba(0,0,0,0)', symbol='square')
    )


def create_node_shapes(graph, styles):
    """Rectangles behind each node, filled by style class."""
    shapes = []
    for node in graph.nodes:
        x, y = node.position
        style = styles.get(node.id, STYLE_NEUTRAL)
        shapes.append(dict(
            type='rect', layer='below',
            x0=x, y0=y, x1=x + node.width, y1=y + node.height,
            fillcolor=STYLE_COLORS[style],
            line=dict(width=1, color='#888'),
        ))
    return shapes


def create_hover_text(node, style):
    lines = [
        f"<b>{node.label}</b> ({node.id})",
        f"Value: {STYLE_TEXT[style]}",
    ]
    if node.is_leaf and node.has_incoming_edge:
        lines.append("Click to toggle")
    return "<br>".join(lines)


def click_event_from_point(click_data):
    """
    Turn Plotly clickData into a node click event.

    Returns:
        dict with id, label, kind, has_incoming_edge, has_outgoing_edge,
        or None if the click did not hit a node
    """
    if not click_data or not click_data.get('points'):
        return None
    custom = click_data['points'][0].get('customdata')
    if not custom or len(custom) != 5:
        return None
    node_id, label, kind, has_incoming, has_outgoing = custom
    return {
        'id': node_id,
        'label': label,
        'kind': kind,
        'has_incoming_edge': bool(has_incoming),
        'has_outgoing_edge': bool(has_outgoing),
    }


def export_to_dot(graph, filename=None, styles=None):
    """
    Export a diagram to GraphViz DOT format.

    Args:
        graph: DiagramGraph
        filename: Optional filename to write to (if None, returns string)
        styles: Optional dict node id -> style class used for fill colors

    Returns:
        str: DOT format string (if filename is None)
    """
    styles = styles or {}
    lines = ['digraph G {', '  rankdir = TB;', '  node [shape=box, style=filled];']

    for node in graph.nodes:
        color = STYLE_COLORS[styles.get(node.id, STYLE_NEUTRAL)]
        lines.append(f'  "{node.id}" [label="{node.label}", fillcolor="{color}"];')
    for edge in graph.edges:
        lines.append(f'  "{edge.source_id}" -> "{edge.target_id}";')

    lines.append('}')
    dot_string = '\n'.join(lines)

    if filename:
        with open(filename, 'w') as f:
            f.write(dot_string)
        return None
    else:
        return dot_string


def export_expressions_to_csv(engine, filename, start=0, stop=100, verbose=False):
    """
    Export a range of enumerated expressions to CSV.

    Args:
        engine: expression engine
        filename: CSV filename to write to
        start, stop: index range (stop exclusive, clipped to engine.count())
        verbose: If True, show a progress bar on stderr
    """
    stop = min(stop, engine.count())

    with open(filename, 'w', newline='') as csvfile:
        writer = csv.writer(csvfile)
        writer.writerow(['Index', 'Expression', 'Nodes', 'Variables'])

        for index in tqdm(range(start, stop), disable=not verbose):
            text, tree = engine.get_expression_tree(index)
            graph = build_graph(tree)
            n_vars = len({node.label for node in graph.nodes if node.is_leaf})
            writer.writerow([index, text, len(graph), n_vars])
