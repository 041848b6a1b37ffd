from __future__ import annotations

from typing import Callable, List

FocusListener = Callable[[bool], None]


class FocusTracker:
    """Window-active flag fed by focus, blur and visibility signals.

    The last signal wins and nothing is debounced. Listeners run only when
    the flag actually flips, so repeated "active" signals do not re-trigger
    work bound to the inactive -> active transition.
    """

    def __init__(self, active: bool = True) -> None:
        self._active = active
        self._listeners: List[FocusListener] = []

    @property
    def active(self) -> bool:
        return self._active

    def add_listener(self, listener: FocusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def focus_gained(self) -> None:
        self._set(True)

    def focus_lost(self) -> None:
        self._set(False)

    def visibility_changed(self, visible: bool) -> None:
        self._set(bool(visible))

    def _set(self, active: bool) -> None:
        if active == self._active:
            return
        self._active = active
        for listener in list(self._listeners):
            listener(active)
