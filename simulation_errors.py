class SimulationError(Exception):
    """Base class for every failure raised by the evaluation engine."""

    kind = "simulation_error"


class ConfigurationError(SimulationError, ValueError):
    kind = "invalid_configuration"


class InsufficientDataError(SimulationError, ValueError):
    kind = "insufficient_data"


class EmptyPopulationError(SimulationError, ValueError):
    kind = "empty_population"


class ShapeMismatchError(SimulationError, ValueError):
    kind = "shape_mismatch"


class DecodeError(SimulationError, ValueError):
    kind = "malformed_input"


class ComputationFault(SimulationError, RuntimeError):
    kind = "internal"
