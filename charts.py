"""
Plotly figure builders for the dashboard.

Pure functions: frame in, figure out. Rendering (st.plotly_chart) is the
caller's job.
"""

import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots


UP_COLOR = "#26a69a"
DOWN_COLOR = "#ef5350"
LINE_COLOR = "#00d4ff"
VWAP_COLOR = "#f0c040"

_LAYOUT = dict(
    template="plotly_dark",
    margin=dict(l=10, r=10, t=40, b=30),
    hovermode="x unified",
)


def _empty_figure(title: str, height: int) -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(text="No data", showarrow=False, x=0.5, y=0.5, xref="paper", yref="paper")
    fig.update_layout(title=title, height=height, **_LAYOUT)
    return fig


def candlestick_figure(frame: pd.DataFrame, symbol: str, height: int = 520) -> go.Figure:
    """Candles on top, volume bars below, VWAP overlay when present."""
    title = f"{symbol} OHLC"
    if frame is None or frame.empty:
        return _empty_figure(title, height)

    fig = make_subplots(rows=2, cols=1, shared_xaxes=True, row_heights=[0.75, 0.25], vertical_spacing=0.03)
    fig.add_trace(
        go.Candlestick(
            x=frame.index,
            open=frame["open"],
            high=frame["high"],
            low=frame["low"],
            close=frame["close"],
            increasing_line_color=UP_COLOR,
            decreasing_line_color=DOWN_COLOR,
            name=symbol,
        ),
        row=1, col=1,
    )
    if "vwap" in frame and frame["vwap"].notna().any():
        fig.add_trace(
            go.Scatter(x=frame.index, y=frame["vwap"], mode="lines",
                       line=dict(color=VWAP_COLOR, width=1), name="VWAP"),
            row=1, col=1,
        )

    colors = [UP_COLOR if c >= o else DOWN_COLOR for o, c in zip(frame["open"], frame["close"])]
    fig.add_trace(go.Bar(x=frame.index, y=frame["volume"], marker_color=colors, name="Volume"), row=2, col=1)

    fig.update_layout(title=title, height=height, showlegend=False, **_LAYOUT)
    fig.update_xaxes(rangeslider_visible=False)
    fig.update_yaxes(tickprefix="$", row=1, col=1)
    return fig


def line_figure(frame: pd.DataFrame, symbol: str, height: int = 360) -> go.Figure:
    title = f"{symbol} Close"
    if frame is None or frame.empty:
        return _empty_figure(title, height)
    fig = go.Figure()
    fig.add_trace(go.Scatter(x=frame.index, y=frame["close"], mode="lines", line=dict(color=LINE_COLOR)))
    fig.update_layout(title=title, height=height, **_LAYOUT)
    fig.update_yaxes(tickprefix="$")
    return fig


def volume_figure(frame: pd.DataFrame, height: int = 220) -> go.Figure:
    if frame is None or frame.empty:
        return _empty_figure("Volume", height)
    fig = go.Figure()
    fig.add_trace(go.Bar(x=frame.index, y=frame["volume"], marker_color=LINE_COLOR))
    fig.update_layout(title="Volume", height=height, **_LAYOUT)
    return fig


def metric_series_figure(series: pd.DataFrame, title: str, height: int = 260) -> go.Figure:
    """One financial series (period, value) as a line with markers."""
    if series is None or series.empty:
        return _empty_figure(title, height)
    fig = go.Figure()
    fig.add_trace(go.Scatter(x=series["period"], y=series["value"], mode="lines+markers",
                             line=dict(color=LINE_COLOR)))
    fig.update_layout(title=title, height=height, **_LAYOUT)
    return fig
