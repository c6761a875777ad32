"""
Error taxonomy for the backtesting and factor-scoring engine.

**Conceptual**: Every failure the engine can report falls into one of a small
number of classes, and each class carries a stable machine-readable `code`.
Callers (the orchestration layer, scripts, an HTTP facade) branch on the class
or the code, never on message text.

**Recovery model**:
  - ValidationError: raised before any simulation starts. The caller fixes
    the input and retries.
  - DataUnavailableError: recovered locally. A factor becomes "unavailable"
    or a rebalance is skipped. It never fails a run by itself.
  - ConfigurationError: unknown strategy id, bad sizing/frequency value.
    Raised immediately at the service boundary, or fails a run in progress.
  - RunTimeoutError / RunCancelledError: a run exceeded its ceiling or was
    cancelled. The run is marked Failed, its partial equity curve is kept.
  - InternalInvariantError: the simulator broke one of its own invariants
    (negative cash, negative quantity). Always fatal to that run.
"""


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """Malformed caller input, rejected before any simulation starts."""

    code = "validation_error"


class DataUnavailableError(EngineError):
    """Bars or fundamentals are missing at a point where they were needed."""

    code = "data_unavailable"


class ConfigurationError(EngineError):
    """Unknown strategy id or an invalid configuration value."""

    code = "configuration_error"


class RunTimeoutError(EngineError):
    """A run exceeded its wall-clock or bar-count ceiling."""

    code = "timeout"


class RunCancelledError(EngineError):
    """A run was cancelled by its owner before it finished."""

    code = "cancelled"


class InternalInvariantError(EngineError):
    """The simulator violated one of its own invariants."""

    code = "internal_invariant"
