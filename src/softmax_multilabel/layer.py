"""Loss layer with an explicit configure / forward / backward lifecycle.

The layer keeps the probabilities and the per-sample active label counts of
its last forward call.  That cache is valid for exactly one backward call on
the same batch; any other call order raises :class:`StaleCountCacheError`.
"""

from __future__ import annotations

from collections.abc import Sequence

import torch
from loguru import logger

from softmax_multilabel.config import MultiLabelLossConfig
from softmax_multilabel.errors import (
    LabelGradientError,
    MultiLabelLossError,
    NotConfiguredError,
    SpatialDimensionError,
    StaleCountCacheError,
)
from softmax_multilabel.kernel import (
    ForwardResult,
    multilabel_nll_backward,
    multilabel_nll_forward,
)
from softmax_multilabel.labels import LabelSets
from softmax_multilabel.normalizer import softmax_normalize


class SoftmaxMultiLabelLossLayer:
    """Softmax followed by the multi-label NLL, with a cached backward.

    Args:
        config: Loss options; defaults to :class:`MultiLabelLossConfig`.
    """

    def __init__(self, config: MultiLabelLossConfig | None = None) -> None:
        self.config = config or MultiLabelLossConfig()
        self.prob: torch.Tensor | None = None
        self.num_labels: torch.Tensor | None = None
        self.label_shape: tuple[int, ...] | None = None
        self._labels: LabelSets | None = None
        self._result: ForwardResult | None = None
        self._cache_valid: bool = False

    @property
    def cache_valid(self) -> bool:
        return self._cache_valid

    @property
    def last_result(self) -> ForwardResult | None:
        return self._result

    @property
    def batch_size(self) -> int | None:
        return None if self.num_labels is None else self.num_labels.numel()

    def configure(
        self, score_shape: Sequence[int], label_shape: Sequence[int]
    ) -> None:
        """Validate input shapes and allocate the probability and count buffers.

        Call again whenever the batch shape changes.
        """
        score_shape = tuple(score_shape)
        label_shape = tuple(label_shape)
        if len(score_shape) < 2 or any(d != 1 for d in score_shape[2:]):
            msg = f"scores must be (N, C) with trivial trailing dims, got {score_shape}"
            raise SpatialDimensionError(msg)
        if not label_shape or label_shape[0] != score_shape[0]:
            msg = f"label shape {label_shape} does not match score shape {score_shape}"
            raise MultiLabelLossError(msg)

        num = score_shape[0]
        if self.num_labels is not None and self.num_labels.numel() != num:
            logger.info(
                f"Resizing count cache from {self.num_labels.numel()} to {num} samples"
            )
        self.prob = torch.empty(score_shape)
        self.num_labels = torch.zeros(num, dtype=torch.long)
        self.label_shape = label_shape
        self._labels = None
        self._result = None
        self._cache_valid = False
        logger.debug(
            f"Configured {type(self).__name__}: scores {score_shape}, labels {label_shape}"
        )

    def forward(
        self,
        scores: torch.Tensor,
        labels: torch.Tensor,
        *,
        per_sample: bool | None = None,
    ) -> torch.Tensor | tuple[torch.Tensor, torch.Tensor]:
        """Normalize ``scores`` and compute the batch loss.

        Returns the scalar loss, or ``(loss, per_sample_loss)`` when
        per-sample output is requested (argument, else config default).
        """
        if self.prob is None or self.num_labels is None or self.label_shape is None:
            msg = "configure() must be called before forward()"
            raise NotConfiguredError(msg)
        if scores.shape[0] != self.num_labels.numel():
            msg = (
                f"count cache is sized for {self.num_labels.numel()} samples "
                f"but the batch has {scores.shape[0]}; call configure() again"
            )
            raise StaleCountCacheError(msg)
        if tuple(scores.shape) != tuple(self.prob.shape):
            msg = (
                f"scores shape {tuple(scores.shape)} does not match the "
                f"configured shape {tuple(self.prob.shape)}"
            )
            raise MultiLabelLossError(msg)
        if tuple(labels.shape) != self.label_shape:
            msg = (
                f"labels shape {tuple(labels.shape)} does not match the "
                f"configured shape {self.label_shape}"
            )
            raise MultiLabelLossError(msg)

        self._cache_valid = False
        want_per_sample = (
            self.config.per_sample_output if per_sample is None else per_sample
        )
        probs = softmax_normalize(scores.detach())
        if self.prob.dtype != probs.dtype or self.prob.device != probs.device:
            self.prob = torch.empty_like(probs)
        self.prob.copy_(probs)

        label_sets = LabelSets.from_padded(labels, sentinel=self.config.sentinel)
        result = multilabel_nll_forward(
            self.prob,
            label_sets,
            eps=self.config.eps,
            per_sample=want_per_sample,
            validate=self.config.validate_labels,
        )
        self.num_labels.copy_(result.active_counts.to(self.num_labels.device))
        self._labels = label_sets
        self._result = result
        self._cache_valid = True

        if want_per_sample:
            return result.loss, result.per_sample_loss  # type: ignore[return-value]
        return result.loss

    def backward(
        self,
        loss_weight: float | torch.Tensor = 1.0,
        propagate_down: Sequence[bool] = (True, False),
    ) -> torch.Tensor | None:
        """Gradient of the loss with respect to the scores of the last forward.

        ``propagate_down`` flags the (scores, labels) inputs that need a
        gradient.  Returns ``None`` when the scores need none.
        """
        if len(propagate_down) > 1 and propagate_down[1]:
            msg = f"{type(self).__name__} cannot backpropagate to label inputs"
            raise LabelGradientError(msg)
        if (
            not self._cache_valid
            or self._labels is None
            or self.prob is None
            or self.num_labels is None
        ):
            msg = "backward() requires a forward() on the same batch first"
            raise StaleCountCacheError(msg)
        if not propagate_down[0]:
            return None

        grad = multilabel_nll_backward(
            self.prob, self._labels, self.num_labels, loss_weight
        )
        self._cache_valid = False
        logger.debug(f"Backward over {self.num_labels.numel()} samples")
        return grad
