"""UI components for Searchmatic."""

from .progress_bar import (
    ProgressTracker,
    render_simple_progress,
)
from .cost_display import (
    render_cost_estimate,
    render_cost_tracker,
    render_budget_input,
    render_cost_summary_card,
)
from .job_monitor import (
    render_job_stats,
    render_job_card,
    render_job_list,
    render_job_badge,
    jobs_to_dataframe,
)
from .status_chart import create_status_chart
from .session import (
    Workspace,
    get_workspace,
    select_project,
    get_current_project,
    require_project,
    render_project_picker,
    render_llm_settings,
    show_error,
)

__all__ = [
    # Progress
    "ProgressTracker",
    "render_simple_progress",
    # Cost
    "render_cost_estimate",
    "render_cost_tracker",
    "render_budget_input",
    "render_cost_summary_card",
    # Jobs
    "render_job_stats",
    "render_job_card",
    "render_job_list",
    "render_job_badge",
    "jobs_to_dataframe",
    # Workspace
    "Workspace",
    "get_workspace",
    "select_project",
    "get_current_project",
    "require_project",
    "render_project_picker",
    "render_llm_settings",
    "show_error",
    # Charts
    "create_status_chart",
]
