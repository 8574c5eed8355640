import logging
import threading
from typing import Callable, Dict, Hashable, Tuple

logger = logging.getLogger(__name__)


class RecheckScheduler:
    """Delayed one-shot actions keyed by node name.

    Each timer carries a token identifying the fencing attempt that armed it.
    Arming again with the same token keeps the running timer; a new token
    replaces it. Timers live only in this process and are lost on restart.
    """

    def __init__(self, timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.timer_factory = timer_factory
        self._timers: Dict[str, Tuple[Hashable, threading.Timer]] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, token: Hashable, delay: float, action: Callable[[], None]) -> bool:
        """Arm action to run after delay seconds. Returns False if already armed for token."""
        with self._lock:
            current = self._timers.get(key)
            if current is not None:
                current_token, current_timer = current
                if current_token == token:
                    return False
                current_timer.cancel()

            timer = self.timer_factory(delay, self._fire, args=(key, token, action))
            timer.daemon = True
            self._timers[key] = (token, timer)
            timer.start()

        logger.info(f"Waiting {delay} seconds, if {key} comes back online")
        return True

    def _fire(self, key: str, token: Hashable, action: Callable[[], None]):
        with self._lock:
            current = self._timers.get(key)
            if current is None or current[0] != token:
                return
            del self._timers[key]
        try:
            action()
        except Exception as e:
            logger.error(f"Deferred re-check for {key} failed: {e}")

    def cancel(self, key: str) -> bool:
        with self._lock:
            current = self._timers.pop(key, None)
        if current is None:
            return False
        current[1].cancel()
        logger.debug(f"Cancelled deferred re-check for {key}")
        return True

    def cancel_all(self):
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for _, timer in timers:
            timer.cancel()

    def pending(self) -> Dict[str, Hashable]:
        with self._lock:
            return {key: token for key, (token, _) in self._timers.items()}
