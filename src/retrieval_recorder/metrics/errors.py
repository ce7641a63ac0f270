"""Metrics-specific exceptions."""


class MetricsSinkError(Exception):
    """Raised when an instrument cannot be created or the sink cannot start.

    This is raised during sink construction only. add() and record() must
    not raise during steady-state event handling.

    Attributes:
        instrument_name: Name of the instrument that failed
        message: Human-readable error description
    """

    def __init__(self, instrument_name: str, message: str) -> None:
        self.instrument_name = instrument_name
        self.message = message
        super().__init__(f"Instrument '{instrument_name}' failed: {message}")
