"""Pick the best candidate out of a batched decoder output."""

from __future__ import annotations

import math

from textbehind.segmentation.errors import EmptyCandidateSet, IndexOutOfRange
from textbehind.vision.types import MaskCandidateSet, Tensor


def _score_key(score: float) -> float:
    # NaN never wins.
    return -math.inf if math.isnan(score) else float(score)


def slice_candidate(candidates: MaskCandidateSet, index: int) -> Tensor:
    """Extract candidate `index` as a standalone `[1, 1, maskH, maskW]` tensor."""
    if len(candidates.masks.dims) != 4:
        raise IndexOutOfRange(f"expected [1, K, H, W] masks, got dims {candidates.masks.dims}")
    k = candidates.count
    if not 0 <= index < k:
        raise IndexOutOfRange(f"candidate index {index} outside [0, {k})")
    md = candidates.mask_dims
    size = md.w * md.h
    start = index * size
    return Tensor(
        name=f"{candidates.masks.name}[{index}]",
        dims=(1, 1, md.h, md.w),
        data=candidates.masks.data[start : start + size],
    )


def select_best(candidates: MaskCandidateSet) -> tuple[Tensor, int]:
    """Return the highest-scoring candidate and its index.

    Ties go to the first index with the maximum score. NaN scores compare as
    -inf; if every score is NaN the first candidate is returned.

    Raises:
        EmptyCandidateSet: If there are no candidates.
        IndexOutOfRange: If the score array does not match the mask batch.
    """
    scores = list(candidates.scores)
    if not scores or candidates.count == 0:
        raise EmptyCandidateSet("Decoder returned an empty candidate set.")
    if len(scores) != candidates.count:
        raise IndexOutOfRange(
            f"{len(scores)} scores for {candidates.count} candidate masks"
        )
    best = 0
    best_key = _score_key(scores[0])
    for i, s in enumerate(scores[1:], start=1):
        key = _score_key(s)
        if key > best_key:
            best, best_key = i, key
    return slice_candidate(candidates, best), best
