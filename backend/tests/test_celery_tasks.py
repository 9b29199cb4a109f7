from app.queue.celery_app import celery_app
from app.queue.scheduler import ACTION_TASKS
from app.queue.tasks import analysis_tasks  # noqa: F401


def test_every_analysis_task_is_a_deferred_action() -> None:
    registered = {name for name in celery_app.tasks if name.startswith("app.queue.tasks.analysis_tasks.")}
    assert registered == set(ACTION_TASKS.values())
