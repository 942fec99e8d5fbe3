"""
Event Bus

Typed publish/subscribe bus used by the core services. Each event name is
backed by a Qt signal carrying a single payload dict, so the bus integrates
with the Qt event loop of the hosting application while staying usable
headless (direct connections do not need a running loop).

Every subscribe() returns a Subscription handle; the owner of a viewport must
unsubscribe all of its handles on teardown so no callback fires against a
destroyed viewport.

Inputs:
    - subscribe(event, callback) from services and viewport controllers
    - publish(event, payload) from services and external collaborators

Outputs:
    - Callback invocation in subscription order
    - Subscription handles

Requirements:
    - PySide6 for QObject/Signal
"""

import warnings
from typing import Any, Callable, Dict, List, Optional

from PySide6.QtCore import QObject, Signal

from utils.debug_log import debug_log


# Events consumed from collaborators
SEGMENTATION_LOADING_COMPLETE = "SEGMENTATION_LOADING_COMPLETE"
SEGMENT_LOADING_COMPLETE = "SEGMENT_LOADING_COMPLETE"
SEGMENTATION_LOADING_FAILED = "SEGMENTATION_LOADING_FAILED"
DISPLAY_SETS_ADDED = "DISPLAY_SETS_ADDED"
DISPLAY_SETS_REMOVED = "DISPLAY_SETS_REMOVED"

# Events published by the core
VIEWPORT_DATA_CHANGED = "VIEWPORT_DATA_CHANGED"
LAYOUT_CHANGED = "LAYOUT_CHANGED"
ACTIVE_VIEWPORT_CHANGED = "ACTIVE_VIEWPORT_CHANGED"
SEGMENTATION_REPRESENTATION_MODIFIED = "SEGMENTATION_REPRESENTATION_MODIFIED"
SEGMENTATION_REMOVED = "SEGMENTATION_REMOVED"
PROTOCOL_CHANGED = "PROTOCOL_CHANGED"

EVENTS = (
    SEGMENTATION_LOADING_COMPLETE,
    SEGMENT_LOADING_COMPLETE,
    SEGMENTATION_LOADING_FAILED,
    DISPLAY_SETS_ADDED,
    DISPLAY_SETS_REMOVED,
    VIEWPORT_DATA_CHANGED,
    LAYOUT_CHANGED,
    ACTIVE_VIEWPORT_CHANGED,
    SEGMENTATION_REPRESENTATION_MODIFIED,
    SEGMENTATION_REMOVED,
    PROTOCOL_CHANGED,
)


class Subscription:
    """Handle returned by EventBus.subscribe(). Call unsubscribe() exactly when the owner is torn down."""

    def __init__(self, bus: "EventBus", event: str, callback: Callable[[Dict[str, Any]], None]):
        self.bus = bus
        self.event = event
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        """Disconnect the callback. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        self.bus._disconnect(self)


class EventBus(QObject):
    """
    Publish/subscribe hub with one Qt signal per event name.

    Features:
    - Explicit Subscription handles
    - Per-event subscriber bookkeeping (used to verify teardown)
    - Unknown event names rejected at subscribe/publish time
    """

    segmentation_loading_complete = Signal(object)
    segment_loading_complete = Signal(object)
    segmentation_loading_failed = Signal(object)
    display_sets_added = Signal(object)
    display_sets_removed = Signal(object)
    viewport_data_changed = Signal(object)
    layout_changed = Signal(object)
    active_viewport_changed = Signal(object)
    segmentation_representation_modified = Signal(object)
    segmentation_removed = Signal(object)
    protocol_changed = Signal(object)

    def __init__(self, parent: Optional[QObject] = None):
        """
        Initialize the bus.

        Args:
            parent: Optional Qt parent object
        """
        super().__init__(parent)
        self._signals = {
            SEGMENTATION_LOADING_COMPLETE: self.segmentation_loading_complete,
            SEGMENT_LOADING_COMPLETE: self.segment_loading_complete,
            SEGMENTATION_LOADING_FAILED: self.segmentation_loading_failed,
            DISPLAY_SETS_ADDED: self.display_sets_added,
            DISPLAY_SETS_REMOVED: self.display_sets_removed,
            VIEWPORT_DATA_CHANGED: self.viewport_data_changed,
            LAYOUT_CHANGED: self.layout_changed,
            ACTIVE_VIEWPORT_CHANGED: self.active_viewport_changed,
            SEGMENTATION_REPRESENTATION_MODIFIED: self.segmentation_representation_modified,
            SEGMENTATION_REMOVED: self.segmentation_removed,
            PROTOCOL_CHANGED: self.protocol_changed,
        }
        self._subscriptions: Dict[str, List[Subscription]] = {event: [] for event in EVENTS}

    def _signal_for(self, event: str):
        if event not in self._signals:
            raise KeyError(f"Unknown event: {event}")
        return self._signals[event]

    def subscribe(self, event: str, callback: Callable[[Dict[str, Any]], None]) -> Subscription:
        """
        Subscribe a callback to an event.

        Args:
            event: One of EVENTS
            callback: Called with the payload dict on every publish

        Returns:
            Subscription handle
        """
        signal = self._signal_for(event)
        subscription = Subscription(self, event, callback)
        signal.connect(callback)
        self._subscriptions[event].append(subscription)
        return subscription

    def _disconnect(self, subscription: Subscription) -> None:
        signal = self._signal_for(subscription.event)
        with warnings.catch_warnings():
            warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*Failed to disconnect.*')
            try:
                signal.disconnect(subscription.callback)
            except (TypeError, RuntimeError):
                pass
        subscribers = self._subscriptions[subscription.event]
        if subscription in subscribers:
            subscribers.remove(subscription)

    def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Deliver a payload to every current subscriber of an event.

        Args:
            event: One of EVENTS
            payload: Event data (an empty dict when omitted)
        """
        signal = self._signal_for(event)
        debug_log("event_bus.publish", event, {"subscribers": len(self._subscriptions[event])})
        signal.emit(payload if payload is not None else {})

    def subscriber_count(self, event: str) -> int:
        """Number of live subscriptions for an event."""
        self._signal_for(event)
        return len(self._subscriptions[event])

    def clear(self) -> None:
        """Unsubscribe everything (session teardown)."""
        for event in EVENTS:
            for subscription in list(self._subscriptions[event]):
                subscription.unsubscribe()
