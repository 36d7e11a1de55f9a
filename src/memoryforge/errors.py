"""
Error taxonomy shared by every memoryforge subsystem.

Subsystems raise these; :class:`memoryforge.engine.ConversationEngine`
captures them per call and reports them in its result envelopes so that a
failing subsystem never takes the host process down with it.
"""

from __future__ import annotations


class MemoryForgeError(Exception):
    """Base class for all memoryforge errors."""


class InvalidMessage(MemoryForgeError):
    """A message is malformed (empty or missing content, bad role, ...).

    Raised before any state is mutated.
    """


class PatchApplyError(MemoryForgeError):
    """A patch operation references a path absent from the target state."""

    def __init__(self, operation: dict, reason: str) -> None:
        super().__init__(f"{operation.get('op')} {operation.get('path')}: {reason}")
        self.operation = operation
        self.reason = reason


class VersionOutOfRange(MemoryForgeError):
    """The requested version is not held by the current patch chain."""

    def __init__(self, version: int, lowest: int, highest: int) -> None:
        super().__init__(
            f"version {version} is outside the available range [{lowest}, {highest}]"
        )
        self.version = version
        self.lowest = lowest
        self.highest = highest


class ModuleUnavailable(MemoryForgeError):
    """A dependent subsystem failed to initialise or is not attached."""

    def __init__(self, module: str, reason: str = "not available") -> None:
        super().__init__(f"{module}: {reason}")
        self.module = module
        self.reason = reason


class ReconstructionMismatch(MemoryForgeError):
    """A reconstructed state differs in size from the recorded snapshot."""

    def __init__(self, version: int, expected: int, actual: int) -> None:
        super().__init__(
            f"version {version} reconstructed to {actual} bytes, expected {expected}"
        )
        self.version = version
        self.expected = expected
        self.actual = actual
