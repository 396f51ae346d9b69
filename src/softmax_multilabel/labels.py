"""Ragged per-sample label sets.

Label tensors arrive as ``(N, M)`` arrays padded with a sentinel (``-1``):
slot ``j`` of sample ``i`` is active only if no sentinel occurs in slots
``0..j``.  :class:`LabelSets` stores the same information explicitly as a
flat index vector plus per-sample counts, so an empty sample is a visible
zero count rather than the outcome of a scan.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch

from softmax_multilabel.errors import (
    EmptyLabelSetError,
    LabelIndexError,
    MultiLabelLossError,
    SpatialDimensionError,
)
from softmax_multilabel.types import LabelSequences

SENTINEL = -1


def as_matrix(tensor: torch.Tensor, name: str) -> torch.Tensor:
    """View an ``(N, C, 1, ..., 1)`` tensor as ``(N, C)``.

    A 1-D tensor is treated as ``(N, 1)``.

    Raises:
        SpatialDimensionError: if any dimension past axis 1 is not 1.
    """
    if tensor.dim() == 0:
        msg = f"{name} must have a batch dimension, got a scalar"
        raise SpatialDimensionError(msg)
    if tensor.dim() == 1:
        return tensor.unsqueeze(1)
    if any(size != 1 for size in tensor.shape[2:]):
        msg = (
            f"{name} must be trivial past the class axis, "
            f"got shape {tuple(tensor.shape)}"
        )
        raise SpatialDimensionError(msg)
    return tensor.reshape(tensor.shape[0], tensor.shape[1])


@dataclass(frozen=True)
class LabelSets:
    """Active labels of a batch, one variable-length set per sample.

    Attributes:
        indices: Long tensor ``(K,)``, every active label in sample order.
        counts: Long tensor ``(N,)``, number of active labels per sample.
    """

    indices: torch.Tensor
    counts: torch.Tensor

    @classmethod
    def from_padded(
        cls, labels: torch.Tensor, sentinel: int = SENTINEL
    ) -> LabelSets:
        """Scan a sentinel-padded label tensor left to right.

        Scanning stops at the first sentinel or at the last slot; anything
        after the first sentinel is ignored.
        """
        matrix = as_matrix(labels.detach(), "labels")
        if matrix.is_floating_point() and not torch.equal(
            matrix, matrix.round()
        ):
            msg = "labels must hold integral class indices"
            raise LabelIndexError(msg)
        matrix = matrix.long()
        active = (matrix != sentinel).long().cumprod(dim=1).bool()
        return cls(indices=matrix[active], counts=active.sum(dim=1))

    @classmethod
    def from_sequences(
        cls,
        sequences: LabelSequences,
        device: torch.device | str | None = None,
    ) -> LabelSets:
        """Build from one sequence of class indices per sample."""
        counts = torch.tensor(
            [len(seq) for seq in sequences], dtype=torch.long, device=device
        )
        indices = torch.tensor(
            [int(k) for seq in sequences for k in seq],
            dtype=torch.long,
            device=device,
        )
        return cls(indices=indices, counts=counts)

    @property
    def num_samples(self) -> int:
        return self.counts.numel()

    @property
    def offsets(self) -> torch.Tensor:
        """Start of each sample's labels in ``indices``, plus the total."""
        return torch.cat([self.counts.new_zeros(1), self.counts.cumsum(dim=0)])

    @property
    def sample_ids(self) -> torch.Tensor:
        """Owning sample of every entry in ``indices``."""
        rows = torch.arange(self.num_samples, device=self.counts.device)
        return rows.repeat_interleave(self.counts)

    def to(self, device: torch.device | str) -> LabelSets:
        return LabelSets(
            indices=self.indices.to(device), counts=self.counts.to(device)
        )

    def per_sample(self) -> list[list[int]]:
        chunks = torch.split(self.indices, self.counts.tolist())
        return [chunk.tolist() for chunk in chunks]

    def to_padded(
        self, capacity: int | None = None, sentinel: int = SENTINEL
    ) -> torch.Tensor:
        """Write the sets back as an ``(N, capacity)`` sentinel-padded tensor."""
        widest = int(self.counts.max().item()) if self.num_samples else 0
        if capacity is None:
            capacity = max(widest, 1)
        if widest > capacity:
            msg = f"a sample has {widest} labels but capacity is {capacity}"
            raise MultiLabelLossError(msg)
        padded = torch.full(
            (self.num_samples, capacity),
            sentinel,
            dtype=torch.long,
            device=self.indices.device,
        )
        sample_ids = self.sample_ids
        slots = (
            torch.arange(self.indices.numel(), device=self.indices.device)
            - self.offsets[:-1][sample_ids]
        )
        padded[sample_ids, slots] = self.indices
        return padded

    def require_nonempty(self) -> None:
        """Raise :class:`EmptyLabelSetError` if any sample has no labels."""
        empty = (self.counts == 0).nonzero().flatten()
        if empty.numel():
            msg = f"samples {empty.tolist()} have no active labels"
            raise EmptyLabelSetError(msg)

    def require_non_negative(self) -> None:
        """Raise :class:`LabelIndexError` on negative indices.

        Torch indexing wraps negative values, so these are rejected even
        when the full range check is skipped.
        """
        negative = (self.indices < 0).nonzero()
        if negative.numel():
            first = negative[0, 0]
            msg = (
                f"label {self.indices[first].item()} of sample "
                f"{self.sample_ids[first].item()} is negative"
            )
            raise LabelIndexError(msg)

    def check_range(self, num_classes: int) -> None:
        """Raise :class:`LabelIndexError` on indices outside ``[0, num_classes)``."""
        bad = ((self.indices < 0) | (self.indices >= num_classes)).nonzero()
        if bad.numel():
            first = bad[0, 0]
            msg = (
                f"label {self.indices[first].item()} of sample "
                f"{self.sample_ids[first].item()} is outside [0, {num_classes})"
            )
            raise LabelIndexError(msg)

    def has_duplicates(self) -> bool:
        """True if some sample lists the same class more than once."""
        if not self.indices.numel():
            return False
        width = int(self.indices.max().item()) + 1
        keys = self.sample_ids * width + self.indices
        return bool(torch.unique(keys).numel() < keys.numel())
