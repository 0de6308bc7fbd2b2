"""Failure taxonomy for generation and playback.

Everything raised here is caught at the pipeline boundary and turned into
a single terminal progress event; none of it escapes to the UI.
"""


class LoopgenError(Exception):
    """Base for every failure the pipeline reports to the user."""


class LoadError(LoopgenError):
    """The model or its runtime could not be obtained. Always retryable."""


class SynthesisError(LoopgenError):
    """The generation call itself raised."""


class EmptyResultError(LoopgenError):
    """Synthesis finished but produced no usable samples."""


class PlaybackError(LoopgenError):
    """The output device could not be opened or fed."""
