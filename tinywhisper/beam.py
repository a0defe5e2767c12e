"""Generic beam search over token sequences."""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")


@dataclass
class BeamNode(Generic[T]):
    """A partial sequence together with its cumulative log probability."""

    seq: list[T] = field(default_factory=list)
    log_prob: float = 0.0


NextFn = Callable[[Sequence[BeamNode]], Sequence[Sequence[tuple]]]
FinishedFn = Callable[[Sequence], bool]


def _best(beams: Sequence[BeamNode]) -> BeamNode | None:
    # On ties the last beam wins.
    if not beams:
        return None
    return max(reversed(beams), key=lambda beam: beam.log_prob)


def beam_search(
    initial_beams: Sequence[BeamNode],
    next_fn: NextFn,
    is_finished: FinishedFn,
    beam_size: int,
    max_depth: int,
) -> list:
    """Run beam search and return the sequence of the most probable beam.

    ``next_fn`` receives the current beams and returns, for each beam, a list of
    ``(token, log_prob)`` continuations where ``log_prob`` is the total score of
    the extended sequence.
    """
    beams = list(initial_beams)
    for depth in range(max_depth):
        best = _best(beams)
        if best is not None and is_finished(best.seq):
            break
        beams = beam_search_step(beams, next_fn, is_finished, beam_size)
        logger.debug("Depth: %d", depth)

    best = _best(beams)
    return list(best.seq) if best is not None else []


def beam_search_step(
    beams: Sequence[BeamNode],
    next_fn: NextFn,
    is_finished: FinishedFn,
    beam_size: int,
) -> list[BeamNode]:
    """Extend every unfinished beam and keep the best ``beam_size`` new and finished beams."""
    if beam_size < 1:
        raise ValueError("beam_size must be at least 1")

    finished_beams: list[BeamNode] = []
    new_beams: list[BeamNode] = []

    continuations = next_fn(beams)

    for beam, options in zip(beams, continuations):
        if is_finished(beam.seq):
            finished_beams.append(beam)
            continue
        for token, log_prob in _top_elements(options, lambda pair: pair[1], beam_size):
            new_beams.append(BeamNode(seq=[*beam.seq, token], log_prob=log_prob))

    return [
        *_top_elements(new_beams, lambda beam: beam.log_prob, beam_size),
        *_top_elements(finished_beams, lambda beam: beam.log_prob, beam_size),
    ]


def _top_elements(elems: Sequence[E], score: Callable[[E], float], num: int) -> list[E]:
    """The ``num`` highest-scoring elements, in ascending order of score."""
    top: list[E] = []
    scores: list[float] = []

    for elem in elems:
        value = score(elem)
        if len(top) == num and value < scores[0]:
            continue
        idx = bisect.bisect_left(scores, value)
        top.insert(idx, elem)
        scores.insert(idx, value)
        if len(top) > num:
            del top[0]
            del scores[0]

    return top