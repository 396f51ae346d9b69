"""Pydantic frozen configuration models for softmax_multilabel."""

from pydantic import BaseModel, model_validator


class MultiLabelLossConfig(BaseModel, frozen=True):
    """Configuration for the softmax multi-label loss.

    ``eps`` is the floor applied to probabilities before taking the log.
    ``None`` selects the smallest normal number of the probability dtype.
    """

    eps: float | None = None
    sentinel: int = -1
    validate_labels: bool = True
    per_sample_output: bool = False

    @model_validator(mode="after")
    def _check_eps_and_sentinel(self) -> "MultiLabelLossConfig":
        if self.eps is not None and not 0.0 < self.eps < 1.0:
            msg = f"eps must lie in (0, 1), got {self.eps}"
            raise ValueError(msg)
        # A non-negative sentinel would collide with a valid class index.
        if self.sentinel >= 0:
            msg = f"sentinel must be negative, got {self.sentinel}"
            raise ValueError(msg)
        return self
