from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures that end a graph-generation run."""

    default_message = "Knowledge graph generation failed"

    def __init__(self, message: str | None = None, stage: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.stage = stage


class EngineInitError(PipelineError):
    """The model runtime is unreachable or the model could not be loaded."""

    default_message = "Completion engine is not available"


class GenerationError(PipelineError):
    """The completion call raised, returned nothing, or timed out."""

    default_message = "LLM generation failed"


class GenerationCancelledError(GenerationError):
    default_message = "Generation was cancelled"


class ExtractionEmptyError(PipelineError):
    """The model answered, but no entities could be extracted from the answer."""

    default_message = (
        "Could not extract a knowledge graph from the model response. "
        "Try more specific instructions or documents with more concrete content."
    )


class CompilationError(PipelineError):
    default_message = "Failed to generate Cypher code"


class InvalidRequestError(PipelineError):
    default_message = "Invalid generation request"


class ResourceNotFoundError(PipelineError):
    """A referenced document or stored graph does not exist."""

    default_message = "Resource not found"
