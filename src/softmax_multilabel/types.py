"""Type aliases and TypedDicts for softmax_multilabel inter-module contracts."""

from collections.abc import Sequence
from typing import TypedDict

import torch


class MultiLabelBatch(TypedDict):
    """A single batch fed to the multi-label loss.

    scores: Float tensor of shape (N, C), raw class scores.
    labels: Tensor of shape (N, M), class indices padded with the sentinel (-1).
    """

    scores: torch.Tensor
    labels: torch.Tensor


# One list of active class indices per sample.
LabelSequences = Sequence[Sequence[int]]
