"""Study status distribution chart."""

import plotly.graph_objects as go

from searchmatic.storage import StudyStatus

STATUS_COLORS = {
    StudyStatus.PENDING: "#808080",
    StudyStatus.SCREENING: "#FFC000",
    StudyStatus.INCLUDED: "#00B050",
    StudyStatus.EXCLUDED: "#FF0000",
    StudyStatus.DUPLICATE: "#D9D9D9",
    StudyStatus.EXTRACTED: "#1F77B4",
}


def create_status_chart(counts: dict[str, int], chart_type: str = "bar") -> go.Figure:
    """
    Create a chart of studies per screening status.

    Args:
        counts: Status value to number of studies (extra keys such as "total" are ignored)
        chart_type: "bar" or "pie"

    Returns:
        Plotly Figure
    """
    # Only statuses with studies
    statuses = [s for s in StudyStatus if counts.get(s.value, 0) > 0]
    labels = [s.value.title() for s in statuses]
    values = [counts[s.value] for s in statuses]
    colors = [STATUS_COLORS[s] for s in statuses]

    if chart_type == "pie":
        fig = go.Figure(data=[go.Pie(
            labels=labels,
            values=values,
            marker=dict(colors=colors),
            textinfo='label+value',
        )])
        fig.update_layout(title="Studies by Status")
    else:
        fig = go.Figure(data=[go.Bar(
            x=labels,
            y=values,
            marker_color=colors,
            text=values,
            textposition='auto',
        )])
        fig.update_layout(
            title="Studies by Status",
            xaxis_title="Status",
            yaxis_title="Number of Studies",
        )

    return fig
