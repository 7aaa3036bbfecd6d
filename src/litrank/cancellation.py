# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Cooperative cancellation for ranking requests."""

import threading


class CancellationToken:
    """Thread-safe cancellation signal threaded through every ranking stage.

    Cancellation is cooperative: stages poll the token between batches and
    tiers. In-flight work is allowed to finish and nothing is raised.

    Example:
        >>> token = CancellationToken()
        >>> token.cancelled
        False
        >>> token.cancel()
        >>> token.cancelled
        True
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal cancellation. Idempotent."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been signaled."""
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
