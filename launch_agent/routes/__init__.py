from flask import current_app


def get_store():
    """ConfigStore of the running app."""
    return current_app.extensions['launch_agent']['store']


def get_scheduler():
    """Scheduler of the running app."""
    return current_app.extensions['launch_agent']['scheduler']
