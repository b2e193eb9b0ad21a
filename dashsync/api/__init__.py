"""
Read-model and control API.

Example:
    >>> from dashsync.api import create_app
    >>> app = create_app(config=load_config("config"))
"""

from dashsync.api.app import AppState, create_app, get_app_state

__all__: list[str] = [
    "AppState",
    "create_app",
    "get_app_state",
]
