"""State layer.

:class:`~pyhassd.state.mirror.StateMirror` is the single source of truth for
the current state of every entity seen on the event feed.
"""

from pyhassd.state.mirror import StateMirror

__all__ = ["StateMirror"]
