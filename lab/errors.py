"""
Error taxonomy for the pipeline lab.

Every failure a session can observe maps onto one of these classes:

- ConfigError: compile or normalise rejected the configuration.
- ExecutionError: the engine failed while processing input.
- TransportError: a share or normalise HTTP call failed or returned a
  non-success status.
- EngineLoadError: the compute engine could not be initialised. Fatal for the
  session that owns it.
- RequestRejected: the session refused a request (duplicate execute, closed
  session) without touching the engine.

All but EngineLoadError are recoverable: they travel as ``Err`` results and
end up as styled entries in the output log.
"""


class LabError(Exception):
    """Base class for all lab errors."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ConfigError(LabError):
    """The configuration failed to parse, validate or compile."""

    kind = "config"


class ExecutionError(LabError):
    """The engine raised an error while processing input."""

    kind = "execution"


class TransportError(LabError):
    """A remote call failed or answered with a non-success status."""

    kind = "transport"

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class EngineLoadError(LabError):
    """The compute engine failed to initialise."""

    kind = "engine_load"


class RequestRejected(LabError):
    """A request was refused by the session before reaching the engine."""

    kind = "rejected"
