from .handlers import (
    build_export_job_service,
    handle_export_message,
    handle_install_webhook,
    handle_stale_job_sweep,
)

__all__ = [
    "build_export_job_service",
    "handle_export_message",
    "handle_install_webhook",
    "handle_stale_job_sweep",
]
