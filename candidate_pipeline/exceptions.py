"""Exception classes for the evaluation pipeline."""


class PipelineError(Exception):
    """Base exception"""
    pass


class ConfigurationError(PipelineError):
    """Environment is missing or invalid; fatal at startup."""
    pass


class ApplicationNotFoundError(PipelineError):
    """Application does not exist for the given organization and job."""
    def __init__(self, application_id: str):
        self.application_id = application_id
        self.message = f"APPLICATION_NOT_FOUND: {application_id}"
        super().__init__(self.message)


class EvaluationError(PipelineError):
    """The AI evaluation could not be produced or parsed."""
    pass
