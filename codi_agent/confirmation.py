"""Confirmation requests for destructive tool calls.

``ConfirmationGate`` asks the user's callback on the loop's own thread. A
callback that answers later returns a ``Future``; the gate waits on it with
an optional timeout and can be cancelled from elsewhere (a UI "stop"
button). Timeout, cancellation and Ctrl+C all resolve to ``abort``.
"""

import threading
from concurrent.futures import CancelledError, Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from .logger import get_logger

_log = get_logger(__name__)


class ConfirmationResult(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    ABORT = "abort"

    @classmethod
    def coerce(cls, value: Any) -> "ConfirmationResult":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        _log.warning("Unrecognized confirmation answer %r, treating as deny", value)
        return cls.DENY


@dataclass
class ToolConfirmation:
    tool_name: str
    input: Dict[str, Any]
    is_dangerous: bool = False
    danger_reason: Optional[str] = None
    diff_preview: Optional[str] = None


ConfirmCallback = Callable[[ToolConfirmation], Union[ConfirmationResult, str, Future]]


class ConfirmationGate:
    def __init__(self, callback: ConfirmCallback, timeout: Optional[float] = None):
        self.callback = callback
        self.timeout = timeout
        self._lock = threading.Lock()
        self._pending: Optional[Future] = None

    @property
    def waiting(self) -> bool:
        with self._lock:
            return self._pending is not None and not self._pending.done()

    def request(self, confirmation: ToolConfirmation) -> ConfirmationResult:
        """Ask the callback and return its answer.

        A plain answer is used as is. A ``Future`` answer is waited on until
        it resolves, the timeout expires or ``cancel`` is called; in the last
        two cases the future is cancelled so the asker can drop its prompt.
        """
        name = confirmation.tool_name
        try:
            answer = self.callback(confirmation)
        except KeyboardInterrupt:
            _log.info("Confirmation for %s interrupted", name)
            return ConfirmationResult.ABORT
        except Exception as e:
            _log.warning("Confirmation callback failed for %s: %s", name, e)
            return ConfirmationResult.ABORT

        if not isinstance(answer, Future):
            return ConfirmationResult.coerce(answer)

        outcome: Future = Future()
        with self._lock:
            self._pending = outcome
        answer.add_done_callback(lambda done: _relay(done, outcome))

        try:
            result = outcome.result(timeout=self.timeout)
        except FutureTimeoutError:
            _log.warning("Confirmation for %s timed out after %ss", name, self.timeout)
            answer.cancel()
            return ConfirmationResult.ABORT
        except CancelledError:
            _log.info("Confirmation for %s cancelled", name)
            answer.cancel()
            return ConfirmationResult.ABORT
        except KeyboardInterrupt:
            answer.cancel()
            return ConfirmationResult.ABORT
        except Exception as e:
            _log.warning("Confirmation answer failed for %s: %s", name, e)
            return ConfirmationResult.ABORT
        finally:
            with self._lock:
                self._pending = None

        return ConfirmationResult.coerce(result)

    def cancel(self) -> bool:
        """Resolve the pending request, if any, as ``abort``."""
        with self._lock:
            pending = self._pending
        return pending is not None and pending.cancel()


def _relay(source: Future, outcome: Future) -> None:
    if source.cancelled():
        outcome.cancel()
        return
    try:
        error = source.exception()
        if error is not None:
            outcome.set_exception(error)
        else:
            outcome.set_result(source.result())
    except InvalidStateError:
        # Already cancelled or timed out; the late answer is dropped.
        pass
