from examprep.models.orm import Question
from examprep.services.positions import active_order, reconcile_positions


def q(qid, position, order=None, manual=False, archived=False):
    return Question(id=qid, source_position=position, display_order=position if order is None else order,
                    display_order_manual=manual, is_archived=archived)


def test_display_order_follows_source_position():
    questions = [q(1, 1, order=7), q(2, 2, order=0), q(3, 3)]
    changed = reconcile_positions(questions)
    assert [x.id for x in changed] == [1, 2]
    assert [x.display_order for x in questions] == [1, 2, 3]


def test_reconcile_is_idempotent():
    questions = [q(1, 1, order=4), q(2, 2, order=9)]
    reconcile_positions(questions)
    assert reconcile_positions(questions) == []


def test_manual_and_archived_orders_are_kept():
    questions = [q(1, 1, order=3, manual=True), q(2, 2, order=8, archived=True), q(3, 3, order=5)]
    changed = reconcile_positions(questions)
    assert [x.id for x in changed] == [3]
    assert [x.display_order for x in questions] == [3, 8, 3]


def test_active_order_excludes_archived_and_breaks_ties_by_position():
    questions = [q(1, 1, order=2, manual=True), q(2, 2, order=1, manual=True), q(3, 3, order=2), q(4, 4, archived=True)]
    assert [x.id for x in active_order(questions)] == [2, 1, 3]
