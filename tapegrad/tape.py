import logging
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from tapegrad.errors import GraphError, TapeOverflowError
from tapegrad.tensor import Tensor

logger = logging.getLogger(__name__)


class OpKind(Enum):
    """Tag selecting the gradient rule of a `BackwardRecord`."""

    ADD = auto()
    ADD_MUL = auto()
    MUL_SCALAR = auto()
    ELT_MUL = auto()
    ELT_MUL_MUL_ADD = auto()
    AFFINE = auto()
    MATMUL = auto()
    MUL_ADD = auto()
    MUL_BATCH = auto()
    SIGMOID = auto()
    TANH = auto()
    RELU = auto()
    ADD_TANH = auto()
    SOFTMAX = auto()
    LAYER_NORM = auto()
    ADD_LAYER_NORM = auto()
    DROPOUT = auto()
    CONCAT = auto()
    PERMUTE = auto()
    RESHAPE = auto()
    TRANSPOSE_BATCH = auto()
    EXPAND = auto()
    REPEAT_ROWS = auto()
    MASKED_FILL = auto()
    MSE_LOSS = auto()
    CROSS_ENTROPY = auto()


@dataclass(frozen=True)
class BackwardRecord:
    """
    One tape entry: which gradient rule to run and the minimal state it needs.

    Attributes:
        kind (OpKind): Selects the gradient rule.
        inputs (Tuple[Optional[Tensor], ...]): Operands receiving gradients.
        output (Tensor): The tensor whose gradient is propagated.
        params (Mapping[str, Any]): Scalar op parameters (flags, scales, sizes).
        saved (Tuple[Any, ...]): Arrays computed in the forward pass (masks, statistics).
        held (Tuple[Tensor, ...]): Tensors whose weights the rule reads. Their storage is
            protected from reuse until the record has run.
    """

    kind: OpKind
    inputs: Tuple[Optional[Tensor], ...]
    output: Tensor
    params: Mapping[str, Any] = field(default_factory=dict)
    saved: Tuple[Any, ...] = ()
    held: Tuple[Tensor, ...] = ()


GradientRule = Callable[[BackwardRecord], None]
GRADIENT_RULES: Dict[OpKind, GradientRule] = {}


def register_gradient(kind: OpKind) -> Callable[[GradientRule], GradientRule]:
    """
    Decorator registering the gradient rule for ``kind``.

    Examples:
        >>> @register_gradient(OpKind.ADD)
        ... def add_backward(record):
        ...     ...
    """

    def decorator(rule: GradientRule) -> GradientRule:
        GRADIENT_RULES[kind] = rule
        return rule

    return decorator


def run_record(record: BackwardRecord) -> None:
    """
    Run a record's gradient rule, then release its holds and dispose its output.

    The output's gradient is complete at this point: every consumer of the output was recorded
    later and has therefore already run. Holds are released even when the rule raises.
    """
    rule = GRADIENT_RULES.get(record.kind)
    if rule is None:
        raise GraphError(f"No gradient rule registered for {record.kind}")
    try:
        if record.output.has_grad:
            rule(record)
    finally:
        release_holds(record)
    record.output.dispose()


def release_holds(record: BackwardRecord) -> None:
    for tensor in record.held:
        tensor.storage_owner._holds -= 1


TapeEntry = Union[BackwardRecord, Callable[[], None]]


class Tape:
    """
    Straight-line log of backward entries replayed last-in-first-out.

    Slots are preallocated so that concurrent ``record`` calls only race on the position counter,
    which is guarded by a lock. Replay is single threaded.
    """

    def __init__(self, capacity: int = 1_024_000) -> None:
        self.capacity = capacity
        self._slots: List[Optional[TapeEntry]] = [None] * capacity
        self._position = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self._position

    def record(self, entry: TapeEntry) -> None:
        """
        Append a `BackwardRecord` or a zero-argument callable.

        Raises:
            TapeOverflowError: If the tape is full.
        """
        with self._lock:
            index = self._position
            if index >= self.capacity:
                raise TapeOverflowError(
                    f"Tape capacity of {self.capacity} entries exceeded"
                )
            self._position += 1
        self._slots[index] = entry

    @staticmethod
    def _run(entry: TapeEntry) -> None:
        if isinstance(entry, BackwardRecord):
            run_record(entry)
        else:
            entry()

    def backward(self) -> None:
        """
        Run every entry from the most recent to the oldest, then clear the tape.

        If an entry raises, the entries that never ran are discarded with their holds released.
        """
        count = self._position
        logger.debug(f"Replaying {count} tape entries")
        try:
            for index in range(count - 1, -1, -1):
                entry = self._slots[index]
                self._slots[index] = None
                self._run(entry)
        finally:
            self.discard()

    def run_top_only(self) -> bool:
        """
        Pop and run only the most recently recorded entry.

        Returns:
            bool: False when the tape was empty.
        """
        with self._lock:
            if self._position == 0:
                return False
            self._position -= 1
            entry = self._slots[self._position]
            self._slots[self._position] = None
        self._run(entry)
        return True

    def entries(self) -> List[TapeEntry]:
        """Recorded entries in recording order."""
        return list(self._slots[: self._position])

    def clear(self) -> None:
        with self._lock:
            for index in range(self._position):
                self._slots[index] = None
            self._position = 0

    def discard(self) -> int:
        """
        Clear the tape, releasing the holds of records that were never replayed.

        Returns:
            int: The number of discarded entries.
        """
        pending = [e for e in self.entries() if e is not None]
        for entry in pending:
            if isinstance(entry, BackwardRecord):
                release_holds(entry)
        self.clear()
        return len(pending)
