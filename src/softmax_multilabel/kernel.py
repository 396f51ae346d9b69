"""Forward and backward passes of the softmax multi-label NLL loss.

A sample ``i`` with active labels ``k_1 .. k_m`` contributes

    loss_i = (1 / m) * sum_j -log(max(P[i, k_j], eps))

and the batch loss is the mean of ``loss_i`` over the ``N`` samples.  With
``P = softmax(scores)`` the gradient with respect to the raw scores is

    dS[i, c] = loss_weight / N * (P[i, c] - t[i, c])

where ``t[i, c]`` is ``1 / m`` for every occurrence of ``c`` among the active
labels of sample ``i``.  Each target row sums to one, so every gradient row
sums to zero.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch
from loguru import logger

from softmax_multilabel.errors import MultiLabelLossError, StaleCountCacheError
from softmax_multilabel.labels import SENTINEL, LabelSets, as_matrix


@dataclass(frozen=True)
class ForwardResult:
    """Outputs of :func:`multilabel_nll_forward`.

    ``active_counts`` is what :func:`multilabel_nll_backward` needs from the
    forward pass; hand the whole result (or the counts) over explicitly.
    """

    loss: torch.Tensor
    active_counts: torch.Tensor
    per_sample_loss: torch.Tensor | None = None

    @property
    def batch_size(self) -> int:
        return self.active_counts.numel()


def resolve_labels(
    labels: torch.Tensor | LabelSets, sentinel: int = SENTINEL
) -> LabelSets:
    if isinstance(labels, LabelSets):
        return labels
    return LabelSets.from_padded(labels, sentinel=sentinel)


def _check_batch(label_sets: LabelSets, num_samples: int) -> None:
    if num_samples == 0:
        msg = "batch has no samples"
        raise MultiLabelLossError(msg)
    if label_sets.num_samples != num_samples:
        msg = (
            f"labels describe {label_sets.num_samples} samples "
            f"but probabilities have {num_samples}"
        )
        raise MultiLabelLossError(msg)


def multilabel_nll_forward(
    probs: torch.Tensor,
    labels: torch.Tensor | LabelSets,
    *,
    eps: float | None = None,
    per_sample: bool = False,
    validate: bool = True,
    sentinel: int = SENTINEL,
) -> ForwardResult:
    """Average negative log-likelihood of each sample's active labels.

    Parameters
    ----------
    probs:
        Probabilities of shape ``(N, C)`` or ``(N, C, 1, ..., 1)``.
    labels:
        Sentinel-padded ``(N, M)`` label tensor or a :class:`LabelSets`.
    eps:
        Probability floor before the log.  ``None`` uses the smallest
        normal number of ``probs.dtype``.
    per_sample:
        Also return the per-sample losses (before batch averaging).
    validate:
        Check the upper bound of every label (``< C``) and warn on
        duplicates.  Negative labels are always rejected.

    Raises
    ------
    EmptyLabelSetError
        A sample has no active labels.
    LabelIndexError
        A label is negative, or ``>= C`` when ``validate`` is set.
    SpatialDimensionError
        ``probs`` has non-trivial dimensions past the class axis.
    """
    matrix = as_matrix(probs, "probabilities")
    label_sets = resolve_labels(labels, sentinel).to(matrix.device)
    num_samples, num_classes = matrix.shape
    _check_batch(label_sets, num_samples)
    label_sets.require_nonempty()
    label_sets.require_non_negative()
    if validate:
        label_sets.check_range(num_classes)
        if label_sets.has_duplicates():
            logger.warning("Some samples list the same label more than once")

    floor = torch.finfo(matrix.dtype).tiny if eps is None else eps
    sample_ids = label_sets.sample_ids
    picked = matrix[sample_ids, label_sets.indices].clamp_min(floor)
    sums = matrix.new_zeros(num_samples).index_add_(
        0, sample_ids, -torch.log(picked)
    )
    per_sample_loss = sums / label_sets.counts.to(matrix.dtype)
    loss = per_sample_loss.mean()
    logger.debug(
        f"Multi-label NLL over {num_samples} samples, "
        f"{label_sets.indices.numel()} active labels"
    )
    return ForwardResult(
        loss=loss,
        active_counts=label_sets.counts.clone(),
        per_sample_loss=per_sample_loss if per_sample else None,
    )


def multilabel_nll_backward(
    probs: torch.Tensor,
    labels: torch.Tensor | LabelSets,
    active_counts: ForwardResult | torch.Tensor,
    loss_weight: float | torch.Tensor = 1.0,
    *,
    sentinel: int = SENTINEL,
) -> torch.Tensor:
    """Gradient of the batch loss with respect to the raw scores.

    ``probs`` and ``labels`` must be those of the forward call that produced
    ``active_counts``.  The result has the shape of ``probs``.

    Raises:
        StaleCountCacheError: if ``active_counts`` does not belong to this
            batch (different size or different per-sample counts).
    """
    matrix = as_matrix(probs, "probabilities")
    if isinstance(active_counts, ForwardResult):
        active_counts = active_counts.active_counts
    num_samples = matrix.shape[0]
    if active_counts.numel() != num_samples:
        msg = (
            f"count cache holds {active_counts.numel()} samples "
            f"but the batch has {num_samples}"
        )
        raise StaleCountCacheError(msg)

    label_sets = resolve_labels(labels, sentinel).to(matrix.device)
    counts = active_counts.to(device=matrix.device, dtype=torch.long)
    if not torch.equal(counts, label_sets.counts):
        msg = "active label counts do not match the labels; run forward on this batch first"
        raise StaleCountCacheError(msg)
    label_sets.require_nonempty()
    label_sets.require_non_negative()

    grad = matrix.clone()
    sample_ids = label_sets.sample_ids
    share = (1.0 / counts.to(matrix.dtype))[sample_ids]
    grad.index_put_((sample_ids, label_sets.indices), -share, accumulate=True)
    grad.mul_(loss_weight / num_samples)
    return grad.reshape(probs.shape)
