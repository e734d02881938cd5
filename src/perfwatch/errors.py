"""Exceptions raised across perfwatch modules.

Most acquisition problems never surface as exceptions: readers flag the
affected keys instead. These are the cases that do propagate.
"""


class SourceUnavailable(Exception):
    """A kernel interface could not be opened or read."""

    def __init__(self, path: str, reason: str = "") -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}" if reason else path)


class SegmentIoError(Exception):
    """No log sink could be opened when logging was requested."""
