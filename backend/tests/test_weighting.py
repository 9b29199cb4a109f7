from types import SimpleNamespace

from app.domain.queue.weighting import compute_weight, jobs_ahead, order_by_weight

from conftest import at


def _job(name: str, priority: str, queued_minutes_ago: float):
    return SimpleNamespace(name=name, priority=priority, queued_at=at(minutes=-queued_minutes_ago))


def test_weight_caps_age_bonus_at_five_minutes() -> None:
    assert compute_weight("normal", at(minutes=-3), at()) == 13
    assert compute_weight("normal", at(minutes=-60), at()) == 15


def test_class_always_dominates_age() -> None:
    old_normal = _job("old-normal", "normal", 120)
    fresh_high = _job("fresh-high", "high", 0)
    fresh_urgent = _job("fresh-urgent", "urgent", 0)
    ordered = order_by_weight([old_normal, fresh_high, fresh_urgent], at())
    assert [job.name for job in ordered] == ["fresh-urgent", "fresh-high", "old-normal"]


def test_fifo_within_equal_weight() -> None:
    first = _job("first", "high", 30)
    second = _job("second", "high", 20)
    ordered = order_by_weight([second, first], at())
    # Both are capped at the same weight; earlier queued_at wins.
    assert [job.name for job in ordered] == ["first", "second"]


def test_jobs_ahead_counts_heavier_jobs() -> None:
    a = _job("a", "urgent", 1)
    b = _job("b", "normal", 4)
    c = _job("c", "normal", 1)
    assert jobs_ahead(c, [a, b, c], at()) == 2
    assert jobs_ahead(a, [a, b, c], at()) == 0
