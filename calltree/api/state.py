"""
API application state

Global state access shared between the app factory and routes
"""

from typing import Dict, Any

# Global state
_global_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    """Get application state"""
    return _global_state


def set_app_state(key: str, value: Any) -> None:
    """Set application state value"""
    _global_state[key] = value


def clear_app_state(key: str) -> None:
    """Remove an application state value"""
    _global_state.pop(key, None)


__all__ = ["get_app_state", "set_app_state", "clear_app_state"]
