"""Hosted-link session model.

A hosted link is an externally hosted page where the user signs in to a
third-party account. The upstream service issues a ``link_id`` and a URL;
this server polls until the link reports completion.

State machine:
    not_started -> link_created -> polling -> finished
    link_created | polling -> abandoned   (absorbing)
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

_FINISHED_STATUSES = frozenset({"finished", "completed"})


class LinkState(str, Enum):
    """Lifecycle state of a hosted link."""

    NOT_STARTED = "not_started"
    LINK_CREATED = "link_created"
    POLLING = "polling"
    FINISHED = "finished"
    ABANDONED = "abandoned"


_ALLOWED_TRANSITIONS: dict[LinkState, frozenset[LinkState]] = {
    LinkState.NOT_STARTED: frozenset({LinkState.LINK_CREATED}),
    LinkState.LINK_CREATED: frozenset({
        LinkState.POLLING, LinkState.FINISHED, LinkState.ABANDONED,
    }),
    LinkState.POLLING: frozenset({LinkState.FINISHED, LinkState.ABANDONED}),
    LinkState.FINISHED: frozenset(),
    LinkState.ABANDONED: frozenset(),
}


def is_finished_payload(payload: Any) -> bool:
    """Check whether a poll response reports completion.

    Integrations disagree on the flag: ``status`` of FINISHED or completed,
    or a boolean ``auth_completed``.

    Args:
        payload: Decoded poll response.

    Returns:
        True if the payload signals a finished link.
    """
    if not isinstance(payload, dict):
        return False
    if payload.get("auth_completed") is True:
        return True
    status = payload.get("status")
    return isinstance(status, str) and status.lower() in _FINISHED_STATUSES


class HostedLink(BaseModel):
    """One in-progress account-linking attempt.

    Attributes:
        link_id: Unique token issued by the upstream service.
        hosted_link_url: Page the user must visit.
        brand_id: Brand being linked, when known.
        state: Current lifecycle state.
        profile_id: Account/profile bound once the link finishes.
        poll_attempts: Number of poll round-trips made so far.
    """

    link_id: str
    hosted_link_url: str = ""
    brand_id: str | None = None
    state: LinkState = LinkState.LINK_CREATED
    profile_id: str | None = None
    poll_attempts: int = Field(default=0, ge=0)

    @classmethod
    def from_tool_payload(cls, payload: dict[str, Any], brand_id: str | None = None) -> "HostedLink | None":
        """Build a link from a tool response asking the user to sign in.

        Args:
            payload: Tool response dict (``link_id`` plus ``url`` or
                ``hosted_link_url``).
            brand_id: Brand the tool call was for.

        Returns:
            A HostedLink, or None if the payload carries no link.
        """
        link_id = payload.get("link_id")
        if not link_id:
            return None
        url = payload.get("hosted_link_url") or payload.get("url") or ""
        return cls(link_id=str(link_id), hosted_link_url=str(url), brand_id=brand_id)

    @property
    def is_terminal(self) -> bool:
        """True once the link is finished or abandoned."""
        return self.state in (LinkState.FINISHED, LinkState.ABANDONED)

    def transition(self, new_state: LinkState) -> None:
        """Move to ``new_state``, rejecting transitions the lifecycle forbids.

        Args:
            new_state: Target state.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if new_state == self.state:
            return
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Hosted link '{self.link_id}' cannot move from "
                f"{self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def record_poll(self, payload: Any) -> bool:
        """Apply one poll response; returns True if the link is now finished.

        Args:
            payload: Decoded poll response.

        Returns:
            Whether the link finished with this response.
        """
        if self.state == LinkState.LINK_CREATED:
            self.transition(LinkState.POLLING)
        self.poll_attempts += 1
        if not is_finished_payload(payload):
            return False
        profile_id = payload.get("profile_id")
        if profile_id:
            self.profile_id = str(profile_id)
        self.transition(LinkState.FINISHED)
        return True

    def abandon(self) -> None:
        """Mark the link abandoned unless it already finished."""
        if self.state != LinkState.FINISHED:
            self.transition(LinkState.ABANDONED)
