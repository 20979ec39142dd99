"""
Owned mask buffers for a removal session.

A MaskSlot holds exactly one live buffer. Replacing it drops the previous
buffer immediately, so full-resolution masks and overlays never pile up
while the user keeps drawing.
"""


class MaskSlot:
    """A single owned buffer with a generation counter."""

    def __init__(self, name):
        self.name = name
        self.generation = 0
        self._buffer = None

    @property
    def value(self):
        return self._buffer

    @property
    def empty(self):
        return self._buffer is None

    def replace(self, buffer):
        """Install a new buffer, releasing the superseded one."""
        self._buffer = buffer
        self.generation += 1
        return self.generation

    def release(self):
        """Drop the buffer; the slot stays usable."""
        if self._buffer is not None:
            self._buffer = None
            self.generation += 1

    def __repr__(self):
        shape = None if self._buffer is None else self._buffer.shape
        return f"MaskSlot({self.name!r}, gen={self.generation}, shape={shape})"
