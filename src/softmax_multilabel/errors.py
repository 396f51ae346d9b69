"""Exceptions raised for input-contract and call-order violations."""


class MultiLabelLossError(ValueError):
    """Base class for all softmax_multilabel failures."""


class EmptyLabelSetError(MultiLabelLossError):
    """A sample has no active labels, so its average loss is undefined."""


class LabelIndexError(MultiLabelLossError):
    """A label is outside ``[0, num_classes)`` or is not an integer."""


class SpatialDimensionError(MultiLabelLossError):
    """The probability tensor carries non-trivial dimensions past the class axis."""


class StaleCountCacheError(MultiLabelLossError):
    """Backward was called without a matching forward for the same batch."""


class LabelGradientError(MultiLabelLossError):
    """A gradient was requested for the label input."""


class NotConfiguredError(MultiLabelLossError):
    """The layer was used before ``configure`` was called."""
