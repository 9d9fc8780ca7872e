"""Hypothesis strategies for property-based testing."""

from hypothesis import strategies as st

from ytflow.models.errors import ErrorKind
from ytflow.models.stages import Stage

VIDEO_ID_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-"

video_ids = st.text(alphabet=VIDEO_ID_ALPHABET, min_size=11, max_size=11)
local_progress = st.floats(min_value=-50.0, max_value=150.0, allow_nan=False)
error_kinds = st.sampled_from(list(ErrorKind))


@st.composite
def progress_events(draw, max_size: int = 40):
    """Stage-local progress reports in arbitrary order."""
    return draw(
        st.lists(
            st.tuples(st.sampled_from(list(Stage)), local_progress),
            min_size=1,
            max_size=max_size,
        )
    )
