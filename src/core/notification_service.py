"""
Notification Service

User-visible notifications raised by the core (match failures, unresolved
viewport references, segmentation decode failures). The hosting UI registers a
listener to show toasts; headless sessions keep the history and the console
line.

Inputs:
    - show(title, message, notification_type) calls

Outputs:
    - Console line per notification
    - Listener callbacks
    - Notification history

Requirements:
    - Standard library only
"""

from typing import Any, Callable, Dict, List

from core.errors import HangingCoreError


NOTIFICATION_TYPES = ("info", "success", "warning", "error")


class NotificationService:
    """Collects notifications and forwards them to registered listeners."""

    def __init__(self, max_history: int = 200):
        self.history: List[Dict[str, Any]] = []
        self.max_history = max_history
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    def add_listener(self, listener: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def show(self, title: str, message: str, notification_type: str = "info") -> Dict[str, Any]:
        """
        Show a notification.

        Args:
            title: Short heading (e.g. "Hanging Protocol")
            message: Body text
            notification_type: info, success, warning or error

        Returns:
            The notification dict
        """
        if notification_type not in NOTIFICATION_TYPES:
            notification_type = "info"
        notification = {"title": title, "message": message, "type": notification_type}
        self.history.append(notification)
        if len(self.history) > self.max_history:
            self.history.pop(0)
        print(f"[NOTIFY] {notification_type.upper()} {title}: {message}")
        for listener in list(self._listeners):
            listener(notification)
        return notification

    def show_error(self, error: HangingCoreError) -> Dict[str, Any]:
        """Show a core error using its title."""
        return self.show(error.title, error.message, "error")

    def clear(self) -> None:
        self.history.clear()
