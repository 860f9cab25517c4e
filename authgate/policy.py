"""
Label-based access policy.

A request may proceed iff the session exists, is authenticated, and at least
one of its labels is on the allow-list. The allow-list is a frozenset loaded
once at startup and handed to AccessPolicy explicitly.
"""

from typing import Iterable, Optional

from .errors import PolicyDeniedError
from .storage import SessionRecord


def labels_allowed(labels: Iterable[str], allowed: frozenset) -> bool:
    return not allowed.isdisjoint(labels)


class AccessPolicy:
    def __init__(self, allowed_labels: frozenset, redirect_url: str):
        self.allowed_labels = frozenset(allowed_labels)
        self.redirect_url = redirect_url

    def evaluate(self, session: Optional[SessionRecord]) -> bool:
        if session is None or not session.authenticated:
            return False
        return labels_allowed(session.labels, self.allowed_labels)

    def require(self, labels: Iterable[str]) -> None:
        """Raise PolicyDeniedError (with the current labels) unless allowed."""
        labels = list(labels)
        if not labels_allowed(labels, self.allowed_labels):
            raise PolicyDeniedError(labels=labels, redirect_url=self.redirect_url)
