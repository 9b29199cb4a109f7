from app.domain.queue.sla import HIGH_UPGRADE_AFTER_MS, NORMAL_UPGRADE_AFTER_MS, sla_upgrade_for
from app.models.analysis_job import JobPriority

from conftest import at


def test_thresholds() -> None:
    assert NORMAL_UPGRADE_AFTER_MS == 15 * 60 * 1000
    assert HIGH_UPGRADE_AFTER_MS == 120_000


def test_normal_upgrades_after_fifteen_minutes_in_class() -> None:
    assert sla_upgrade_for("normal", at(), at(), at(minutes=15)) is None
    upgrade = sla_upgrade_for("normal", at(), at(), at(minutes=16))
    assert upgrade is not None
    assert upgrade.to_priority == JobPriority.HIGH


def test_high_upgrade_measured_from_priority_change() -> None:
    # Queued long ago but promoted to high just now: fresh clock.
    assert sla_upgrade_for("high", at(minutes=-60), at(), at(seconds=60)) is None
    upgrade = sla_upgrade_for("high", at(minutes=-60), at(), at(seconds=121))
    assert upgrade.to_priority == JobPriority.URGENT


def test_urgent_never_upgrades() -> None:
    assert sla_upgrade_for("urgent", at(minutes=-600), None, at()) is None
