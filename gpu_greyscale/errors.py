"""
Error taxonomy
==============
Every failure the pipeline reports is one of these. Per-image errors carry
the stage they happened in so batch summaries and CLI diagnostics can name it.
"""


class GreyscaleError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message, stage=None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    @property
    def kind(self):
        return type(self).__name__


class ConfigurationError(GreyscaleError):
    """Invalid arguments or missing input. Nothing gets processed."""


class ImageIOError(GreyscaleError, OSError):
    """Decode or encode failure in the image codec."""


class AllocationError(GreyscaleError):
    """Device memory could not be reserved."""

    def __init__(self, message, stage="allocate"):
        super().__init__(message, stage)


class TransferError(GreyscaleError):
    """Host <-> device copy failed."""


class KernelError(GreyscaleError):
    """Kernel launch or execution fault."""

    def __init__(self, message, status=None, stage="compute"):
        super().__init__(message, stage)
        self.status = status

    def __str__(self):
        if self.status is None:
            return self.message
        return f"{self.message} (status {self.status})"
