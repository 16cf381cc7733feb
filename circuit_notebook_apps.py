"""
circuit_notebook_apps.py

Dash/Plotly interactive application for browsing enumerated circuits.
This module provides a ready-to-use app for Jupyter notebooks or a browser.

Pages:
- /      : total expression count and an index input
- /<n>   : expression #n as text plus its interactive diagram; click a
           variable leaf or use the control strip to toggle it and watch
           every node recolor

Each browser tab carries its own diagram snapshot in a dcc.Store, so
diagrams never share state.
"""

import asyncio
import re

from dash import Dash, dcc, html, Input, Output, State as DashState, ALL, ctx, no_update
from dash.exceptions import PreventUpdate

from circuit_controller import DiagramController, READY, INVALID_INDEX_TEXT
from circuit_engine import get_engine_handle
from circuit_visualization import (
    STYLE_COLORS, create_plotly_graph, click_event_from_point
)
from circuit_core import STYLE_TRUE, STYLE_FALSE


INDEX_PATTERN = re.compile(r'^\d+$')

BUTTON_STYLE = {
    'padding': '4px 10px', 'margin': '3px', 'fontSize': '13px',
    'border': '1px solid #ccc7b7', 'borderRadius': '4px', 'cursor': 'pointer',
}


# =============================================================================
# Helpers
# =============================================================================

def parse_path(pathname):
    """'/42' -> '42'; anything that is not a bare number -> None"""
    if not pathname:
        return None
    candidate = pathname.strip('/')
    return candidate if INDEX_PATTERN.match(candidate) else None


def load_controller(engine, index):
    """Load expression #index into a fresh controller (runs the layout to completion)."""
    controller = DiagramController(engine)
    asyncio.run(controller.load(index))
    return controller


def apply_interaction(engine, snapshot, triggered, click_data=None):
    """
    Apply one control-strip or diagram click to a stored diagram.

    Args:
        engine: expression engine
        snapshot: diagram snapshot from the store
        triggered: 'diagram-graph' or {'type': 'var-toggle', 'index': name}
        click_data: Plotly clickData for diagram clicks

    Returns:
        (controller, changed) where changed tells whether a variable flipped
    """
    controller = DiagramController.from_snapshot(engine, snapshot, evaluate=False)
    if controller.state != READY:
        return controller, False

    if triggered == 'diagram-graph':
        changed = controller.handle_node_click(click_event_from_point(click_data))
    elif isinstance(triggered, dict) and triggered.get('type') == 'var-toggle':
        name = triggered['index']
        if name not in controller.assignment:
            return controller, False
        controller.toggle(name)
        changed = True
    else:
        changed = False
    return controller, changed


def diagram_figure(controller):
    return create_plotly_graph(
        controller.graph, controller.styles,
        title=controller.text,
        uirevision=f"{controller.index}-{controller.viewport_revision}",
    )


def toggle_button_content(controller, name):
    value = controller.assignment.get(name, True)
    label = f"{name}: {'ON' if value else 'OFF'}"
    style = dict(BUTTON_STYLE, backgroundColor=STYLE_COLORS[STYLE_TRUE if value else STYLE_FALSE])
    return label, style


def truth_table(controller):
    """Render the single current truth table row."""
    row = controller.truth_table_row
    if row is None:
        return html.Div("No result", style={'color': 'gray', 'fontStyle': 'italic'})

    names = list(row.inputs)
    output = '?' if row.output is None else ('true' if row.output else 'false')
    cell = {'border': '1px solid #ccc7b7', 'padding': '3px 10px', 'textAlign': 'center'}
    return html.Table([
        html.Thead(html.Tr([html.Th(n, style=cell) for n in names] + [html.Th('Output', style=cell)])),
        html.Tbody(html.Tr(
            [html.Td('T' if row.inputs[n] else 'F', style=cell) for n in names]
            + [html.Td(output, style=dict(cell, fontWeight='bold'))]
        )),
    ], style={'borderCollapse': 'collapse', 'margin': '0 auto'})


def output_text(controller):
    if controller.output is None:
        return "Output: unknown"
    return f"Output: {'true' if controller.output else 'false'}"


def diagram_update(engine, snapshot, triggered, triggered_value, click_data, n_toggles):
    """
    Outputs of the diagram interaction callback.

    Args:
        engine: expression engine
        snapshot: diagram snapshot from the store
        triggered: ctx.triggered_id of the callback
        triggered_value: value of the triggering property (n_clicks for buttons)
        click_data: Plotly clickData of the diagram
        n_toggles: number of control-strip buttons on the page

    Returns:
        (store data, figure, clickData, button labels, button styles,
         output text, truth table)

    Raises:
        PreventUpdate: when the trigger changes nothing
    """
    if triggered is None or not snapshot:
        raise PreventUpdate
    if triggered == 'diagram-graph' and not click_data:
        raise PreventUpdate
    if isinstance(triggered, dict) and not triggered_value:
        raise PreventUpdate

    controller, changed = apply_interaction(engine, snapshot, triggered, click_data)
    if not changed:
        # still clear clickData so the same node can be clicked again
        if triggered == 'diagram-graph':
            return (no_update, no_update, None,
                    [no_update] * n_toggles, [no_update] * n_toggles,
                    no_update, no_update)
        raise PreventUpdate

    contents = [toggle_button_content(controller, name) for name in controller.variables]
    return (
        controller.snapshot(),
        diagram_figure(controller),
        None,
        [label for label, _ in contents],
        [style for _, style in contents],
        output_text(controller),
        truth_table(controller),
    )


# =============================================================================
# Page layouts
# =============================================================================

def search_bar(value=''):
    return html.Div([
        dcc.Input(id='index-input', type='text', placeholder='Go to index…', value=value,
                  debounce=False, style={'padding': '4px', 'marginRight': '5px'}),
        html.Button('Go', id='go-btn', n_clicks=0, style=BUTTON_STYLE),
    ], style={'display': 'inline-block'})


def home_layout(engine):
    return html.Div([
        html.H1("CircFinity", style={'textAlign': 'center', 'marginTop': '60px'}),
        html.Div(search_bar(), style={'textAlign': 'center', 'margin': '20px'}),
        html.Div("Total expressions", style={'textAlign': 'center', 'fontSize': '12px'}),
        html.Pre(str(engine.count()), style={'textAlign': 'center'}),
    ])


def expression_layout(engine, index):
    """Page for expression #index: text, diagram, control strip and truth table row."""
    controller = load_controller(engine, index)

    header = html.Div([
        dcc.Link("CircFinity", href='/', style={'fontSize': '20px', 'marginRight': '20px'}),
        search_bar(str(index)),
    ], style={'borderBottom': '1px solid #ccc7b7', 'padding': '8px'})

    body = [
        html.H3(f"Expression #{index}", style={'textAlign': 'center'}),
        html.Pre(controller.text or INVALID_INDEX_TEXT, style={'textAlign': 'center'}),
    ]

    if controller.state == READY:
        strip = []
        for name in controller.variables:
            label, style = toggle_button_content(controller, name)
            strip.append(html.Button(label, id={'type': 'var-toggle', 'index': name},
                                     n_clicks=0, style=style))
        body.extend([
            dcc.Store(id='diagram-store', data=controller.snapshot()),
            dcc.Graph(id='diagram-graph', figure=diagram_figure(controller),
                      config={'displayModeBar': False, 'scrollZoom': True}),
            html.Div(strip, id='control-strip',
                     style={'display': 'flex', 'flexWrap': 'wrap', 'justifyContent': 'center',
                            'backgroundColor': '#fdf9ee', 'borderTop': '1px solid #ccc7b7',
                            'padding': '6px'}),
            html.Div(output_text(controller), id='expr-output',
                     style={'textAlign': 'center', 'margin': '8px', 'fontWeight': 'bold'}),
            html.Div(truth_table(controller), id='truth-table'),
        ])
    elif controller.error and controller.text != INVALID_INDEX_TEXT:
        body.append(html.Div(f"Diagram unavailable: {controller.error}",
                             style={'color': 'gray', 'textAlign': 'center'}))

    return html.Div([header, html.Div(body)])


# =============================================================================
# Circuit App
# =============================================================================

def create_circuit_app(engine=None, handle=None, title='CircFinity'):
    """
    Create the interactive circuit browser Dash app.

    Args:
        engine: expression engine; if omitted one is acquired from the
                shared EngineHandle and held for the app's lifetime. Inside
                a running event loop (Jupyter), pass
                engine=await get_engine_handle().acquire() instead.
        handle: EngineHandle to acquire from (defaults to the global one)
        title: browser tab title

    Returns:
        Dash app ready to run with app.run(jupyter_mode='inline', ...)
    """
    if engine is None:
        handle = handle if handle is not None else get_engine_handle()
        engine = asyncio.run(handle.acquire())

    app = Dash(__name__, suppress_callback_exceptions=True, title=title)

    app.layout = html.Div([
        dcc.Location(id='url', refresh=False),
        html.Div(id='page-content'),
    ], style={'fontFamily': 'sans-serif'})

    @app.callback(
        Output('page-content', 'children'),
        Input('url', 'pathname'),
    )
    def display_page(pathname):
        index = parse_path(pathname)
        if index is None:
            return home_layout(engine)
        return expression_layout(engine, index)

    @app.callback(
        Output('url', 'pathname'),
        [Input('go-btn', 'n_clicks'), Input('index-input', 'n_submit')],
        DashState('index-input', 'value'),
        prevent_initial_call=True
    )
    def navigate(go_clicks, submits, value):
        if not go_clicks and not submits:
            return no_update
        value = (value or '').strip()
        if not INDEX_PATTERN.match(value):
            return no_update
        return f"/{value}"

    @app.callback(
        [Output('diagram-store', 'data'),
         Output('diagram-graph', 'figure'),
         Output('diagram-graph', 'clickData'),
         Output({'type': 'var-toggle', 'index': ALL}, 'children'),
         Output({'type': 'var-toggle', 'index': ALL}, 'style'),
         Output('expr-output', 'children'),
         Output('truth-table', 'children')],
        [Input('diagram-graph', 'clickData'),
         Input({'type': 'var-toggle', 'index': ALL}, 'n_clicks')],
        DashState('diagram-store', 'data'),
        prevent_initial_call=True
    )
    def update_diagram(click_data, toggle_clicks, snapshot):
        triggered_value = ctx.triggered[0]['value'] if ctx.triggered else None
        return diagram_update(engine, snapshot, ctx.triggered_id, triggered_value,
                              click_data, len(toggle_clicks))

    return app


if __name__ == '__main__':
    create_circuit_app().run(debug=True)
