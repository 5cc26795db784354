"""
Error taxonomy for marking and verification.
Every error is terminal for the current operation; nothing is retried here.
"""


class WatermarkError(Exception):
    """Base class for all meshmark errors."""


class MalformedKeyError(WatermarkError, ValueError):
    pass


class ModelNotFoundError(WatermarkError, FileNotFoundError):
    pass


class ParseError(WatermarkError, ValueError):
    """The container bytes could not be interpreted as a usable GLB."""


class SaveError(WatermarkError, OSError):
    pass


class InsufficientCapacityError(WatermarkError, ValueError):
    """The selected mesh cannot carry the digest at the requested bit density."""


class InsufficientVerticesError(WatermarkError, ValueError):
    """Fewer vertices than the keyed permutation needs."""


class MissingAttributeError(WatermarkError, KeyError):
    """A primitive of the selected mesh lacks the target attribute."""

    def __str__(self):
        # KeyError quotes its argument, keep the plain message
        return Exception.__str__(self)


class DigestMismatchError(WatermarkError):
    """Embedded digest differs from the recomputed one (file was altered)."""
