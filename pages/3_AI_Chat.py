"""AI Chat page: research conversations scoped to the current project."""

import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from components.cost_display import render_cost_summary_card
from components.session import get_workspace, render_llm_settings, render_project_picker, require_project, show_error
from searchmatic.errors import SearchmaticError
from searchmatic.storage import MessageRole

ROLE_AVATARS = {MessageRole.USER: "🧑‍🔬", MessageRole.ASSISTANT: "🤖", MessageRole.SYSTEM: "⚙️"}


def init_session_state():
    """Initialize session state variables."""
    if "conversation_id" not in st.session_state:
        st.session_state.conversation_id = None


def render_conversation_sidebar(workspace, project):
    """Conversation list with a button to start a new one."""
    with st.sidebar:
        st.markdown("### 💬 Conversations")
        if st.button("➕ New conversation", use_container_width=True):
            conversation = workspace.chat.create_conversation(workspace.user, project.id)
            st.session_state.conversation_id = conversation.id
            st.rerun()

        conversations = workspace.chat.list_conversations(workspace.user, project.id)
        ids = [c.id for c in conversations]
        if st.session_state.conversation_id not in ids:
            st.session_state.conversation_id = ids[0] if ids else None

        for conversation in conversations:
            selected = conversation.id == st.session_state.conversation_id
            label = f"{'▶ ' if selected else ''}{conversation.title}"
            if st.button(label, key=f"conv_{conversation.id}", use_container_width=True):
                st.session_state.conversation_id = conversation.id
                st.rerun()


def render_conversation_settings(workspace, conversation):
    with st.expander("⚙️ Conversation settings"):
        with st.form(f"conversation_form_{conversation.id}"):
            title = st.text_input("Title", value=conversation.title)
            context = st.text_area(
                "Context for the assistant",
                value=conversation.context or "",
                help="Added to the system prompt, e.g. the review stage you are working on",
            )
            if st.form_submit_button("Save"):
                workspace.chat.update_conversation(workspace.user, conversation.id, title=title, context=context)
                st.rerun()

        if st.button("🗑️ Delete conversation", key=f"delete_conv_{conversation.id}"):
            workspace.chat.delete_conversation(workspace.user, conversation.id)
            st.session_state.conversation_id = None
            st.rerun()


def render_messages(workspace, conversation):
    for message in workspace.chat.get_messages(workspace.user, conversation.id):
        with st.chat_message(message.role.value, avatar=ROLE_AVATARS.get(message.role)):
            st.markdown(message.content)
            if message.role == MessageRole.ASSISTANT and message.metadata:
                meta = message.metadata
                st.caption(
                    f"{meta.get('model', '')} · {meta.get('input_tokens', 0)} in / "
                    f"{meta.get('output_tokens', 0)} out · ${meta.get('cost', 0):.4f}"
                )


def render_chat_input(workspace, conversation):
    if not workspace.ai_enabled:
        st.warning("Connect an AI provider in the sidebar to chat with the assistant.")
        return

    prompt = st.chat_input("Ask about your review...")
    if not prompt:
        return

    with st.chat_message("user", avatar=ROLE_AVATARS[MessageRole.USER]):
        st.markdown(prompt)
    with st.chat_message("assistant", avatar=ROLE_AVATARS[MessageRole.ASSISTANT]):
        with st.spinner("Thinking..."):
            try:
                reply = workspace.chat.send_message(workspace.user, conversation.id, prompt)
            except SearchmaticError as e:
                show_error(e, "Chat")
                return
            except Exception as e:
                # The question is stored; only the reply is missing
                show_error(e, "AI reply")
                return
        st.markdown(reply.content)
    st.rerun()


def main():
    st.title("💬 AI Research Assistant")
    init_session_state()
    workspace = get_workspace()
    render_project_picker(workspace)
    project = require_project(workspace)
    render_conversation_sidebar(workspace, project)
    with st.sidebar:
        st.markdown("---")
        render_cost_summary_card(workspace.cost_tracker)
    render_llm_settings(workspace)

    if st.session_state.conversation_id is None:
        st.info("Start a new conversation from the sidebar.")
        return

    conversation = workspace.chat.get_conversation(workspace.user, st.session_state.conversation_id)
    if conversation is None:
        st.session_state.conversation_id = None
        st.rerun()

    st.subheader(conversation.title)
    render_conversation_settings(workspace, conversation)
    render_messages(workspace, conversation)
    render_chat_input(workspace, conversation)


if __name__ == "__main__":
    main()
