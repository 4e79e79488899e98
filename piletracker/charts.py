"""Plotly chart builders."""
from __future__ import annotations

import logging
from typing import Mapping

import numpy as np
import pandas as pd
import plotly.graph_objects as go

from .site_map import MAP_STATUS_COLORS, MAP_STATUS_LABELS, MAP_STATUSES
from .status import (
    STATUS_ACCEPTED,
    STATUS_COLORS,
    STATUS_LABELS,
    STATUS_REFUSAL,
    STATUS_TOLERANCE,
    STATUSES,
)

LOGGER = logging.getLogger(__name__)

GRID_GRAY = "#e9ecef"
TREND_BLUE = "#0074D9"
HOVER_LABEL = dict(
    bgcolor="rgba(255,255,255,0.95)",
    font=dict(color="#111827", size=13),
    bordercolor="rgba(17,24,39,0.15)",
    align="left",
    namelength=0,
)


def _empty_figure(height: int = 300, message: str | None = None) -> go.Figure:
    """Return an empty figure placeholder."""

    figure = go.Figure().update_layout(height=height, margin=dict(l=40, r=20, t=30, b=50))
    if message:
        figure.add_annotation(text=message, showarrow=False, x=0.5, y=0.5, xref="paper", yref="paper")
        figure.update_xaxes(visible=False)
        figure.update_yaxes(visible=False)
    return figure


def create_status_pie(counts: Mapping[str, int], height: int = 280) -> go.Figure:
    """Donut of pile counts per status."""

    statuses = [status for status in STATUSES if counts.get(status, 0) > 0]
    if not statuses:
        return _empty_figure(height, "No piles yet")
    figure = go.Figure(
        data=[
            go.Pie(
                labels=[STATUS_LABELS[s] for s in statuses],
                values=[counts[s] for s in statuses],
                marker=dict(colors=[STATUS_COLORS[s] for s in statuses]),
                hole=0.55,
                sort=False,
                textinfo="percent",
                hovertemplate="%{label}: %{value} piles<extra></extra>",
            )
        ]
    )
    figure.update_layout(
        height=height,
        margin=dict(l=10, r=10, t=10, b=10),
        legend=dict(orientation="h", y=-0.05),
        paper_bgcolor="#ffffff",
    )
    return figure


def create_machine_status_chart(top: pd.DataFrame, height: int = 320) -> go.Figure:
    """Stacked status-rate bars for the busiest machines."""

    if top.empty:
        LOGGER.debug("Machine chart requested with empty dataset")
        return _empty_figure(height, "No machine data")

    figure = go.Figure()
    for status, column in (
        (STATUS_ACCEPTED, "accepted_rate"),
        (STATUS_TOLERANCE, "tolerance_rate"),
        (STATUS_REFUSAL, "refusal_rate"),
    ):
        figure.add_trace(
            go.Bar(
                x=top["machine"],
                y=top[column],
                name=STATUS_LABELS[status],
                marker_color=STATUS_COLORS[status],
                marker_line_width=0,
                customdata=np.stack([top["total_piles"], top["average_drive_time"]], axis=-1),
                hovertemplate=(
                    "Machine %{x}<br>"
                    + STATUS_LABELS[status]
                    + ": %{y:.1f}%<br>"
                    "Piles: %{customdata[0]}<br>"
                    "Avg drive: %{customdata[1]:.1f} min<extra></extra>"
                ),
                hoverlabel=HOVER_LABEL,
            )
        )
    figure.update_yaxes(range=[0, 100], ticksuffix="%", gridcolor=GRID_GRAY, zeroline=False)
    figure.update_xaxes(type="category", tickangle=-10)
    figure.update_layout(
        barmode="stack",
        height=height,
        margin=dict(l=36, r=16, t=10, b=10),
        bargap=0.25,
        plot_bgcolor="#f8f9fa",
        paper_bgcolor="#ffffff",
        dragmode=False,
        legend=dict(orientation="h", y=1.08),
    )
    LOGGER.debug("Machine status chart built with %d machines", len(top))
    return figure


def create_machine_efficiency_chart(top: pd.DataFrame, height: int = 280) -> go.Figure:
    if top.empty:
        return _empty_figure(height, "No machine data")
    ordered = top.sort_values("efficiency", ascending=True)
    figure = go.Figure(
        data=[
            go.Bar(
                x=ordered["efficiency"],
                y=ordered["machine"],
                orientation="h",
                marker_color=STATUS_COLORS[STATUS_ACCEPTED],
                text=ordered["efficiency"].round(1).astype(str) + "%",
                textposition="outside",
                hovertemplate="Machine %{y}<br>Efficiency: %{x:.1f}%<extra></extra>",
                hoverlabel=HOVER_LABEL,
            )
        ]
    )
    figure.update_xaxes(range=[0, 110], ticksuffix="%", gridcolor=GRID_GRAY)
    figure.update_yaxes(type="category")
    figure.update_layout(
        height=height,
        margin=dict(l=60, r=16, t=10, b=10),
        plot_bgcolor="#f8f9fa",
        paper_bgcolor="#ffffff",
        dragmode=False,
    )
    return figure


def create_daily_trend_chart(daily: pd.DataFrame, height: int = 300) -> go.Figure:
    """Piles per day with the refusal count as a second trace."""

    if daily.empty:
        return _empty_figure(height, "No dated production")
    dates = pd.to_datetime(daily["date"], errors="coerce")
    figure = go.Figure()
    figure.add_trace(
        go.Scatter(
            x=dates,
            y=daily["piles"],
            mode="lines+markers",
            name="Piles",
            line=dict(color=TREND_BLUE),
            customdata=np.stack([daily["machines"], daily["average_drive_time"]], axis=-1),
            hovertemplate=(
                "%{x|%d-%b-%Y}<br>Piles: %{y}<br>Machines: %{customdata[0]}<br>"
                "Avg drive: %{customdata[1]:.1f} min<extra></extra>"
            ),
        )
    )
    figure.add_trace(
        go.Bar(
            x=dates,
            y=daily["refusal"],
            name=STATUS_LABELS[STATUS_REFUSAL],
            marker_color=STATUS_COLORS[STATUS_REFUSAL],
            opacity=0.6,
            hovertemplate="%{x|%d-%b-%Y}<br>Refusals: %{y}<extra></extra>",
        )
    )
    figure.update_yaxes(gridcolor=GRID_GRAY, zeroline=False, title="Piles")
    figure.update_layout(
        height=height,
        margin=dict(l=40, r=20, t=30, b=50),
        plot_bgcolor="#fafafa",
        paper_bgcolor="#ffffff",
        legend=dict(orientation="h", y=1.1),
        hovermode="closest",
    )
    return figure


def create_group_chart(groups: pd.DataFrame, by: str = "block", height: int = 320) -> go.Figure:
    """Stacked status counts per block (or pile type)."""

    if groups.empty:
        return _empty_figure(height, "No data")
    figure = go.Figure()
    for status in (STATUS_ACCEPTED, STATUS_TOLERANCE, STATUS_REFUSAL):
        figure.add_trace(
            go.Bar(
                x=groups[by].astype(str),
                y=groups[status],
                name=STATUS_LABELS[status],
                marker_color=STATUS_COLORS[status],
                hovertemplate="%{x}<br>" + STATUS_LABELS[status] + ": %{y}<extra></extra>",
            )
        )
    figure.update_xaxes(type="category", tickangle=-30)
    figure.update_yaxes(gridcolor=GRID_GRAY, zeroline=False)
    figure.update_layout(
        barmode="stack",
        height=height,
        margin=dict(l=36, r=16, t=10, b=40),
        plot_bgcolor="#f8f9fa",
        paper_bgcolor="#ffffff",
        legend=dict(orientation="h", y=1.08),
    )
    return figure


def create_site_map(frame: pd.DataFrame, height: int = 560) -> go.Figure:
    """Planar easting/northing scatter of pile plot positions, one trace per status."""

    if frame.empty:
        return _empty_figure(height, "No pile coordinates. Upload a pile plot with Northing/Easting columns.")
    figure = go.Figure()
    for status in MAP_STATUSES:
        subset = frame[frame["status"] == status]
        if subset.empty:
            continue
        figure.add_trace(
            go.Scattergl(
                x=subset["easting"],
                y=subset["northing"],
                mode="markers",
                name=f"{MAP_STATUS_LABELS[status]} ({len(subset)})",
                marker=dict(color=MAP_STATUS_COLORS[status], size=7, line=dict(width=0)),
                customdata=np.stack(
                    [
                        subset["pile_tag"].astype(str),
                        subset["block"].fillna("").astype(str),
                        subset["embedment"].map(lambda v: "" if pd.isna(v) else f"{v:.2f}"),
                        subset["design_embedment"].map(lambda v: "" if pd.isna(v) else f"{v:.2f}"),
                    ],
                    axis=-1,
                ),
                hovertemplate=(
                    "<b>%{customdata[0]}</b><br>Block: %{customdata[1]}<br>"
                    "Embedment: %{customdata[2]}<br>Design: %{customdata[3]}<br>"
                    + MAP_STATUS_LABELS[status]
                    + "<extra></extra>"
                ),
                hoverlabel=HOVER_LABEL,
            )
        )
    figure.update_xaxes(title="Easting", gridcolor=GRID_GRAY, zeroline=False)
    figure.update_yaxes(title="Northing", gridcolor=GRID_GRAY, zeroline=False, scaleanchor="x", scaleratio=1)
    figure.update_layout(
        height=height,
        margin=dict(l=50, r=20, t=30, b=50),
        plot_bgcolor="#f8f9fa",
        paper_bgcolor="#ffffff",
        legend=dict(orientation="h", y=1.06),
        hovermode="closest",
    )
    LOGGER.debug("Site map built with %d points", len(frame))
    return figure
