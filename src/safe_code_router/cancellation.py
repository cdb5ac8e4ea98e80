from __future__ import annotations

import threading

from loguru import logger


class CancellationToken:
    """Thread-safe cancellation signal shared by one request.

    Example:
        ```python
        token = CancellationToken()
        token.cancel("workflow aborted")
        ```
    """

    def __init__(self) -> None:
        """Create an un-cancelled token.

        Example:
            ```python
            token = CancellationToken()
            ```
        """
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Return whether cancellation was requested.

        Example:
            ```python
            if token.cancelled:
                ...
            ```
        """
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Return the reason passed to `cancel`, if any.

        Example:
            ```python
            why = token.reason
            ```
        """
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Request cancellation; repeated calls keep the first reason.

        Example:
            ```python
            token.cancel("shutdown")
            ```
        """
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("Cancellation requested: {}", reason)

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, returning early with True if cancelled.

        Example:
            ```python
            interrupted = token.wait(5.0)
            ```
        """
        return self._event.wait(max(0.0, seconds))

