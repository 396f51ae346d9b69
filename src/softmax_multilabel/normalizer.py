"""Score normalization feeding the multi-label loss."""

from __future__ import annotations

import torch


def softmax_normalize(scores: torch.Tensor) -> torch.Tensor:
    """Softmax over the class axis (dim 1); output has the shape of ``scores``.

    ``torch.softmax`` subtracts the row maximum first, so large scores do not
    overflow.
    """
    return torch.softmax(scores, dim=1)
