"""AI cost and budget components for Streamlit."""

import streamlit as st
from typing import Optional

from searchmatic.llm.cost_tracker import CostTracker, CostEstimate


def render_cost_estimate(
    estimate: CostEstimate,
    budget_limit: Optional[float] = None,
    current_spent: float = 0.0,
) -> bool:
    """
    Show what an AI batch is expected to cost.

    Args:
        estimate: CostEstimate from CostTracker.estimate_cost
        budget_limit: Optional session budget in USD
        current_spent: Amount already spent this session

    Returns:
        False when the estimate would push spending past the budget
    """
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Estimated Cost", f"${estimate.estimated_cost:.4f}")
    with col2:
        st.metric("Calls", f"{estimate.n_items:,}")
    with col3:
        st.metric("Model", estimate.model)

    with st.expander("Token estimate"):
        st.markdown(f"""
        - **Input per call:** {estimate.avg_input_tokens:,} tokens
        - **Output per call:** {estimate.avg_output_tokens:,} tokens
        - **Total:** {(estimate.avg_input_tokens + estimate.avg_output_tokens) * estimate.n_items:,} tokens
        """)

    if budget_limit is None:
        return True

    total_after = current_spent + estimate.estimated_cost
    if total_after > budget_limit:
        st.error(
            f"⚠️ Running this would bring spending to ${total_after:.4f}, "
            f"over the ${budget_limit:.2f} budget."
        )
        return False
    st.success(f"✅ Within budget. Remaining afterwards: ${budget_limit - total_after:.4f}")
    return True


def render_cost_tracker(tracker: CostTracker) -> None:
    """Session spending with a per-operation breakdown."""
    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Total Spent", f"${tracker.total_cost:.4f}")
    with col2:
        if tracker.budget_limit:
            st.metric("Remaining Budget", f"${tracker.remaining_budget or 0:.4f}")
        else:
            st.metric("Budget Limit", "Not set")
    with col3:
        st.metric("AI Calls", f"{len(tracker.entries):,}")

    if tracker.budget_limit:
        used = min(tracker.total_cost / tracker.budget_limit, 1.0)
        st.progress(used)
        if tracker.is_paused:
            st.error("❌ Budget limit reached. AI features are paused.")
        elif tracker.near_budget:
            st.warning("⚠️ Approaching budget limit!")

    by_operation = tracker.get_summary()["by_operation"]
    if by_operation:
        with st.expander("Cost by operation"):
            for name, data in by_operation.items():
                st.markdown(
                    f"**{name.replace('_', ' ').title()}**: {data['count']} calls, "
                    f"${data['total_cost']:.4f} "
                    f"({data['total_input_tokens']:,} in / {data['total_output_tokens']:,} out)"
                )


def render_budget_input(tracker: CostTracker, key: str = "budget_limit") -> None:
    """Checkbox and number input that set the session budget."""
    enabled = st.checkbox("Enable budget limit", value=tracker.budget_limit is not None, key=f"{key}_enable")
    if not enabled:
        if tracker.budget_limit is not None:
            tracker.set_budget_limit(None)
        return

    limit = st.number_input(
        "Budget Limit (USD)",
        min_value=0.01,
        max_value=100.0,
        value=tracker.budget_limit or 5.0,
        step=0.50,
        format="%.2f",
        key=key,
        help="AI calls stop once this amount has been spent",
    )
    if limit != tracker.budget_limit:
        tracker.set_budget_limit(limit)


def render_cost_summary_card(tracker: CostTracker) -> None:
    """Compact spending summary for the sidebar."""
    st.markdown("**💰 AI Cost**")
    st.markdown(f"Spent: **${tracker.total_cost:.4f}**")
    if tracker.budget_limit:
        st.markdown(f"Remaining: **${tracker.remaining_budget or 0:.4f}**")
        st.progress(min(tracker.total_cost / tracker.budget_limit, 1.0))
