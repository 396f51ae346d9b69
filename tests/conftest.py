"""Shared pytest fixtures for softmax_multilabel tests."""

import pytest
import torch

from softmax_multilabel.types import MultiLabelBatch


@pytest.fixture()
def probs_a() -> torch.Tensor:
    """One sample, 3 classes."""
    return torch.tensor([[0.7, 0.2, 0.1]], dtype=torch.float64)


@pytest.fixture()
def probs_two_samples() -> torch.Tensor:
    return torch.tensor(
        [[0.7, 0.2, 0.1], [0.4, 0.4, 0.2]], dtype=torch.float64
    )


@pytest.fixture()
def random_batch() -> MultiLabelBatch:
    """B=6, C=5 scores with 1-3 active labels per sample, M=4 slots."""
    generator = torch.Generator().manual_seed(0)
    return {
        "scores": torch.randn(6, 5, generator=generator, dtype=torch.float64),
        "labels": torch.tensor(
            [
                [0, -1, -1, -1],
                [1, 3, -1, -1],
                [4, 2, 0, -1],
                [2, -1, 3, 3],
                [3, 1, 0, 2],
                [1, -1, -1, -1],
            ]
        ),
    }
