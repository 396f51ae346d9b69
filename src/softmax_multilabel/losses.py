"""Loss modules wiring the multi-label kernel into torch autograd."""

from __future__ import annotations

from typing import Any

import torch
import torch.nn as nn

from softmax_multilabel.config import MultiLabelLossConfig
from softmax_multilabel.errors import LabelGradientError, MultiLabelLossError
from softmax_multilabel.kernel import (
    ForwardResult,
    multilabel_nll_backward,
    multilabel_nll_forward,
)
from softmax_multilabel.labels import SENTINEL, LabelSets
from softmax_multilabel.normalizer import softmax_normalize
from softmax_multilabel.utils.hydra import register


class SoftmaxMultiLabelNLLFunction(torch.autograd.Function):
    """Softmax + multi-label NLL with the analytic backward.

    Returns ``(loss, per_sample_loss, active_counts)``; the counts are not
    differentiable.  Both loss outputs may receive upstream gradients.
    """

    @staticmethod
    def forward(  # type: ignore[override]
        ctx: Any,
        scores: torch.Tensor,
        labels: torch.Tensor,
        eps: float | None = None,
        sentinel: int = SENTINEL,
        validate: bool = True,
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        if ctx.needs_input_grad[1]:
            msg = "SoftmaxMultiLabelNLL cannot backpropagate to label inputs"
            raise LabelGradientError(msg)
        probs = softmax_normalize(scores.detach())
        label_sets = LabelSets.from_padded(labels, sentinel=sentinel)
        result = multilabel_nll_forward(
            probs, label_sets, eps=eps, per_sample=True, validate=validate
        )
        label_sets = label_sets.to(probs.device)
        ctx.save_for_backward(probs, label_sets.indices, result.active_counts)
        ctx.set_materialize_grads(False)
        ctx.mark_non_differentiable(result.active_counts)
        return result.loss, result.per_sample_loss, result.active_counts

    @staticmethod
    def backward(  # type: ignore[override]
        ctx: Any,
        grad_loss: torch.Tensor | None,
        grad_per_sample: torch.Tensor | None,
        grad_counts: torch.Tensor | None,
    ) -> tuple[torch.Tensor | None, None, None, None, None]:
        probs, indices, counts = ctx.saved_tensors
        label_sets = LabelSets(indices=indices, counts=counts)

        grad_scores = None
        if grad_loss is not None:
            grad_scores = multilabel_nll_backward(
                probs, label_sets, counts, grad_loss
            )
        if grad_per_sample is not None:
            # d(loss_i)/dS_i is the batch gradient with loss_weight = N.
            residual = multilabel_nll_backward(
                probs, label_sets, counts, float(probs.shape[0])
            )
            shape = (-1,) + (1,) * (residual.dim() - 1)
            term = residual * grad_per_sample.reshape(shape)
            grad_scores = term if grad_scores is None else grad_scores + term
        return grad_scores, None, None, None, None


@register(group="loss", name="softmax_multilabel")
class SoftmaxMultiLabelLoss(nn.Module):
    """Softmax multi-label negative log-likelihood.

    Each sample's loss is the mean negative log-probability of its active
    labels, so samples with different numbers of labels stay comparable.
    The batch loss is the mean over samples.

    Parameters
    ----------
    eps:
        Probability floor before the log (``None``: dtype's smallest normal).
    sentinel:
        Padding value ending a sample's label slots.
    validate_labels:
        Reject labels outside ``[0, num_classes)``.
    """

    def __init__(
        self,
        eps: float | None = None,
        sentinel: int = SENTINEL,
        validate_labels: bool = True,
    ) -> None:
        super().__init__()
        self.config = MultiLabelLossConfig(
            eps=eps, sentinel=sentinel, validate_labels=validate_labels
        )

    def forward(self, logits: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
        """Compute the batch loss.

        Parameters
        ----------
        logits:
            Raw model output of shape ``(B, C)``.
        targets:
            Label slots of shape ``(B, M)`` padded with ``sentinel``.
        """
        return self.forward_with_details(logits, targets).loss

    def forward_with_details(
        self, logits: torch.Tensor, targets: torch.Tensor
    ) -> ForwardResult:
        """Batch loss plus per-sample losses and active label counts."""
        loss, per_sample_loss, active_counts = SoftmaxMultiLabelNLLFunction.apply(
            logits,
            targets,
            self.config.eps,
            self.config.sentinel,
            self.config.validate_labels,
        )
        return ForwardResult(
            loss=loss, active_counts=active_counts, per_sample_loss=per_sample_loss
        )

    def extra_repr(self) -> str:
        return (
            f"eps={self.config.eps}, sentinel={self.config.sentinel}, "
            f"validate_labels={self.config.validate_labels}"
        )


@register(group="loss", name="cross_entropy")
class SingleLabelCrossEntropyLoss(nn.CrossEntropyLoss):
    """Cross-entropy over sentinel-padded labels with one active label each.

    Takes the same ``(B, M)`` targets as :class:`SoftmaxMultiLabelLoss`, so
    the two are interchangeable on single-label batches.
    """

    def __init__(
        self, sentinel: int = SENTINEL, label_smoothing: float = 0.0
    ) -> None:
        super().__init__(label_smoothing=label_smoothing)
        self.sentinel = sentinel

    def forward(self, input: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        label_sets = LabelSets.from_padded(target, sentinel=self.sentinel)
        label_sets.require_nonempty()
        multi = (label_sets.counts > 1).nonzero().flatten()
        if multi.numel():
            msg = (
                "cross_entropy needs exactly one active label per sample; "
                f"samples {multi.tolist()} have more"
            )
            raise MultiLabelLossError(msg)
        label_sets.require_non_negative()
        return super().forward(input, label_sets.indices)


def build_loss_fn(
    name: str,
    eps: float | None = None,
    sentinel: int = SENTINEL,
    label_smoothing: float = 0.0,
) -> nn.Module:
    """Factory for loss functions.

    Parameters
    ----------
    name:
        ``"softmax_multilabel"`` or ``"cross_entropy"``.
    eps:
        Probability floor (ignored for cross_entropy).
    sentinel:
        Label padding value.
    label_smoothing:
        Label smoothing factor (cross_entropy only).

    Returns
    -------
    nn.Module
        The configured loss function.
    """
    if name == "softmax_multilabel":
        return SoftmaxMultiLabelLoss(eps=eps, sentinel=sentinel)
    if name == "cross_entropy":
        return SingleLabelCrossEntropyLoss(
            sentinel=sentinel, label_smoothing=label_smoothing
        )
    msg = f"Unknown loss function: {name!r}. Use 'softmax_multilabel' or 'cross_entropy'."
    raise ValueError(msg)
