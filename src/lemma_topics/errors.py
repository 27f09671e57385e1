class PipelineError(Exception):
    """
    Base class for errors raised by the lemmatize -> chunk -> LDA pipeline.

    Args:
        message: Human readable description of the failure.
        stage: Name of the pipeline stage that failed (e.g. "reader",
            "annotator", "corpus", "trainer").
    """

    stage = "pipeline"

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"{self.stage} failed: {self.args[0]}"


class ReadError(PipelineError):
    """An input file is missing, unreadable or not valid UTF-8."""

    stage = "reader"


class AnnotationError(PipelineError):
    """The annotator could not process a document."""

    stage = "annotator"


class ConfigurationError(PipelineError):
    """Invalid settings, or nothing left to model after filtering."""

    stage = "configuration"


class FittingError(PipelineError):
    """The topic model library failed while fitting."""

    stage = "trainer"


class CancelledError(PipelineError):
    """The run was cancelled before the corpus was complete."""

    stage = "lemmatizer"
