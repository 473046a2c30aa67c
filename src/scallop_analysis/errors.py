"""Exceptions raised by the detection pipeline."""


class ScallopError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(ScallopError):
    """Invalid or unreadable configuration, or an unusable run setup.

    Fatal: aborts the run before any image is processed.
    """


class ClassifierLoadError(ScallopError):
    """A classifier model could not be loaded. Fatal."""


class ImageSkipped(ScallopError):
    """The current image cannot be processed. The batch continues."""

    def __init__(self, filename: str, reason: str):
        super().__init__(f"{filename}: {reason}")
        self.filename = filename
        self.reason = reason
