class GradeTrackError(Exception):
    pass


class ValidationError(GradeTrackError):
    """Raised for out-of-range or missing input (credits, marks, target SGPA)."""


class ConfigurationError(GradeTrackError):
    """Raised when a grading scheme cannot be used for lookups."""
