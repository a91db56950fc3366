"""Display ordering of the questions in a set."""
from typing import Iterable, List

from examprep.models.orm import Question


def reconcile_positions(questions: Iterable[Question]) -> List[Question]:
    """Bring display orders in line with source positions.

    Active questions without a manual order follow their source position.
    Manually ordered active questions and archived questions keep the order
    they have. Returns the questions whose display order changed; running it
    twice changes nothing the second time.
    """
    changed = []
    for q in questions:
        if q.is_archived or q.display_order_manual:
            continue
        if q.display_order != q.source_position:
            q.display_order = q.source_position
            changed.append(q)
    return changed


def active_order(questions: Iterable[Question]) -> List[Question]:
    """The ordering served to learners: non-archived, by display order then source position."""
    return sorted((q for q in questions if not q.is_archived), key=lambda q: (q.display_order, q.source_position))
