"""Read governance settings from the active Flask app, with built-in defaults."""

from flask import current_app, has_app_context

DEFAULTS = {
    "OVERDUE_SWEEP_INTERVAL_SECONDS": 300,
    "APPROVAL_NOTICE_HOURS": 48,
    "ADMIN_ROLE": "ADMIN",
    "PROPAGATION_FAILURE_ROLES": ["ADMIN", "QUALITY_MANAGER"],
    "IMPACT_NOTIFICATION_ROLES": ["QUALITY_MANAGER", "PROCESS_ENGINEER"],
}


def setting(name: str):
    default = DEFAULTS.get(name)
    if has_app_context():
        return current_app.config.get(name, default)
    return default
