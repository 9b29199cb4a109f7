"""Lazy service exports so importing a domain module does not build the Celery and provider singletons."""

__all__ = [
    "queue_manager",
    "queue_maintenance_service",
    "queue_metrics_service",
    "dispatch_service",
    "circuit_breakers",
]


def __getattr__(name: str):
    if name == "queue_manager":
        from app.services.queue_manager import queue_manager

        return queue_manager
    if name == "queue_maintenance_service":
        from app.services.queue_maintenance_service import queue_maintenance_service

        return queue_maintenance_service
    if name == "queue_metrics_service":
        from app.services.queue_metrics_service import queue_metrics_service

        return queue_metrics_service
    if name == "dispatch_service":
        from app.services.dispatch_service import dispatch_service

        return dispatch_service
    if name == "circuit_breakers":
        from app.services.circuit_breaker import circuit_breakers

        return circuit_breakers
    raise AttributeError(name)
