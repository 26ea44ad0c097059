"""
Exceptions raised by the graph core.

All of these are contract violations: they abort the current forward or backward pass
and propagate to the caller. Nothing in this package retries or recovers from them.
"""


class GraphError(Exception):
    """Base class for every error raised by tapegrad."""


class ShapeError(GraphError, ValueError):
    """Operand dimensions do not agree with what the operation requires."""


class InvalidViewError(ShapeError):
    """A narrow/permute/expand/reshape request falls outside the source tensor."""


class NullOperandError(GraphError, TypeError):
    """A required tensor argument was None."""


class ConfigMismatchError(GraphError, KeyError):
    """A kernel configuration's key set differs from the template's declared keys."""

    def __str__(self) -> str:
        # KeyError quotes its message, which is unreadable for long key lists
        return str(self.args[0]) if self.args else ""


class AliasingError(GraphError):
    """An in-place operation was requested on a tensor that is not exclusively owned."""


class ReleasedBufferError(GraphError):
    """The weight buffer of a released or disposed tensor was accessed."""


class AllocationError(GraphError, MemoryError):
    """The allocator could not provide storage."""


class TapeOverflowError(AllocationError):
    """More backward records were appended than the tape has capacity for."""
