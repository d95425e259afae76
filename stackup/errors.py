"""
Error taxonomy for manifest, build and start failures.
"""

from typing import List, Optional


class StackupError(Exception):
    """Base class for every error surfaced to the operator."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.hint:
            data["hint"] = self.hint
        return data

    @property
    def code(self) -> str:
        name = type(self).__name__
        if name.endswith("Error"):
            name = name[:-5]
        out = []
        for i, ch in enumerate(name):
            if ch.isupper() and i:
                out.append("_")
            out.append(ch.lower())
        return "".join(out) or "stackup"


# Configuration

class ManifestError(StackupError):
    """The manifest is malformed or references something undeclared."""

    def __init__(self, message: str, errors: Optional[List[str]] = None, hint: Optional[str] = None):
        super().__init__(message, hint)
        self.errors = errors or []


class CycleError(ManifestError):
    """The depends_on graph contains a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            hint="Remove one of the depends_on entries in the cycle"
        )


# Build-time

class RecipeError(StackupError):
    """The build recipe cannot be parsed or is structurally invalid."""


class MissingStageError(RecipeError):
    """A COPY --from names a stage that does not precede it."""

    def __init__(self, stage_ref: str, stage_index: int):
        self.stage_ref = stage_ref
        self.stage_index = stage_index
        super().__init__(
            f"Stage {stage_index} copies from unknown stage '{stage_ref}'",
            hint="COPY --from must name an earlier stage alias or index"
        )


class BuildError(StackupError):
    """A stage failed; no image was produced."""

    def __init__(self, message: str, service: Optional[str] = None, stage: Optional[str] = None,
                 hint: Optional[str] = None):
        super().__init__(message, hint)
        self.service = service
        self.stage = stage


class ImageNotFoundError(BuildError):
    """A base or prebuilt image could not be resolved."""


# Start-time

class StartError(StackupError):
    """A container could not be started."""

    def __init__(self, message: str, service: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(message, hint)
        self.service = service


class PortConflictError(StartError):
    """A published host port is already bound."""

    def __init__(self, host_port: int, service: Optional[str] = None, holder: Optional[str] = None):
        self.host_port = host_port
        self.holder = holder
        held = f" (held by {holder})" if holder else ""
        super().__init__(
            f"Host port {host_port} is already in use{held}",
            service=service,
            hint="Free the port or change the published host port"
        )


class VolumeMountError(StartError):
    """A volume could not be created or attached."""


class StateError(StackupError):
    """Illegal service state transition."""


class EngineError(StackupError):
    """The container engine command failed."""

    def __init__(self, message: str, command: Optional[List[str]] = None, output: str = "",
                 hint: Optional[str] = None):
        super().__init__(message, hint)
        self.command = command or []
        self.output = output
