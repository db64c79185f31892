"""
NeverlandsSession
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import contextlib
import enum
import logging
import threading
import time
from typing import Callable, Optional


class SessionState(enum.Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    ERROR = "error"


SessionObserver = Callable[["SessionState", "SessionState"], None]


class Session:
    """Current login state, readable at any time. Observers are called on every state change."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._observers: list[SessionObserver] = list()
        self.state = SessionState.INACTIVE
        self.last_activity: float = clock()
        self.failures = 0

    def subscribe(self, observer: SessionObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def set_state(self, state: SessionState):
        previous, self.state = self.state, state
        if previous is state:
            return
        logging.info(f"Session {previous.value} -> {state.value}")
        for observer in list(self._observers):
            try:
                observer(previous, state)
            except Exception as e:
                # one broken observer must not stop the others from hearing about it
                logging.exception(e)

    def record_activity(self):
        self.last_activity = self._clock()

    def seconds_since_activity(self) -> float:
        return self._clock() - self.last_activity

    def is_expired(self, timeout: float) -> bool:
        return self.seconds_since_activity() > timeout

    def reset(self):
        self.failures = 0
        self.set_state(SessionState.INACTIVE)


class ActivityTracker:
    """
    Counts in-flight user activities.
    Any caller that is doing something on the player's behalf wraps it in begin()/end() or track().
    """

    def __init__(self, session: Session):
        self._session = session
        self._lock = threading.Lock()
        self.active = 0

    def begin(self):
        with self._lock:
            self.active += 1
        self._session.record_activity()

    def end(self):
        with self._lock:
            if self.active > 0:
                self.active -= 1
        self._session.record_activity()

    @contextlib.contextmanager
    def track(self):
        self.begin()
        try:
            yield
        finally:
            self.end()

    def is_idle(self, timeout: Optional[float] = 60.0) -> bool:
        with self._lock:
            if self.active > 0:
                return False
        return self._session.seconds_since_activity() > timeout
