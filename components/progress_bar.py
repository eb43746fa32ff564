"""Progress display for long-running AI batches."""

import time
from typing import Callable

import streamlit as st


class ProgressTracker:
    """Progress bar, status line and ETA for a batch of items."""

    def __init__(self, total: int, description: str = "Processing"):
        """
        Args:
            total: Number of items in the batch
            description: Heading shown above the bar
        """
        self.total = total
        self.description = description
        self.current = 0
        self.start_time = None

        self._bar = None
        self._status = None
        self._metrics = None

    def start(self) -> None:
        self.start_time = time.time()
        self.current = 0
        st.markdown(f"**{self.description}**")
        self._bar = st.progress(0)
        self._status = st.empty()
        self._metrics = st.empty()

    def update(self, current: int, status: str = "") -> None:
        """
        Args:
            current: Items finished so far
            status: Status message to display
        """
        if self._bar is None:
            self.start()
        self.current = min(current, self.total)
        fraction = self.current / self.total if self.total > 0 else 0.0
        self._bar.progress(fraction)
        if status:
            self._status.markdown(f"*{status}*")
        self._metrics.markdown(self._metrics_text(fraction))

    def _metrics_text(self, fraction: float) -> str:
        parts = [f"{self.current}/{self.total}", f"{fraction * 100:.1f}%"]
        if self.start_time and self.current > 0:
            elapsed = time.time() - self.start_time
            remaining = (self.total - self.current) * elapsed / self.current
            if remaining < 60:
                parts.append(f"~{remaining:.0f}s remaining")
            else:
                parts.append(f"~{remaining / 60:.1f}min remaining")
        return " | ".join(parts)

    def complete(self, message: str = "Complete!") -> None:
        if self._bar is None:
            return
        self._bar.progress(1.0)
        self._status.markdown(f"✅ **{message}**")
        elapsed = time.time() - self.start_time if self.start_time else 0
        self._metrics.markdown(f"Processed {self.total} items in {elapsed:.1f}s")

    def error(self, message: str) -> None:
        if self._status is not None:
            self._status.markdown(f"❌ **Error:** {message}")

    def get_callback(self) -> Callable[[int, int, str], None]:
        """Callback(current, total, status) for DataExtractor.extract_batch."""
        def callback(current: int, total: int, status: str) -> None:
            self.total = total
            self.update(current, status)

        return callback


def render_simple_progress(current: int, total: int, label: str = "Progress") -> None:
    fraction = current / total if total > 0 else 0.0
    st.progress(fraction)
    st.caption(f"{label}: {current}/{total} ({fraction * 100:.1f}%)")
