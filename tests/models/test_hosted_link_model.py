"""Tests for the HostedLink lifecycle model."""

import pytest

from src.models import HostedLink, LinkState
from src.models.hosted_link import is_finished_payload


class TestFinishedPayload:
    """Completion flag recognition."""

    @pytest.mark.parametrize("payload", [
        {"status": "FINISHED"},
        {"status": "completed"},
        {"status": "finished"},
        {"auth_completed": True},
        {"status": "PENDING", "auth_completed": True},
    ])
    def test_finished(self, payload):
        assert is_finished_payload(payload)

    @pytest.mark.parametrize("payload", [
        {"status": "PENDING"},
        {"auth_completed": False},
        {"auth_completed": "true"},
        {},
        None,
        "FINISHED",
    ])
    def test_not_finished(self, payload):
        assert not is_finished_payload(payload)


class TestFromToolPayload:
    """Building a link from a brand tool's sign-in response."""

    def test_url_key(self):
        link = HostedLink.from_tool_payload(
            {"link_id": "L1", "url": "https://gg/link/L1"}, brand_id="goodreads",
        )
        assert link.link_id == "L1"
        assert link.hosted_link_url == "https://gg/link/L1"
        assert link.brand_id == "goodreads"
        assert link.state == LinkState.LINK_CREATED

    def test_hosted_link_url_key_preferred(self):
        link = HostedLink.from_tool_payload(
            {"link_id": "L1", "url": "a", "hosted_link_url": "b"},
        )
        assert link.hosted_link_url == "b"

    def test_no_link_id(self):
        assert HostedLink.from_tool_payload({"purchases": []}) is None


class TestLifecycle:
    """State transitions."""

    def test_poll_then_finish_binds_profile(self):
        link = HostedLink(link_id="L1")

        assert link.record_poll({"status": "PENDING"}) is False
        assert link.state == LinkState.POLLING
        assert link.record_poll({"status": "completed", "profile_id": "p-9"}) is True

        assert link.state == LinkState.FINISHED
        assert link.profile_id == "p-9"
        assert link.poll_attempts == 2
        assert link.is_terminal

    def test_abandon_from_polling(self):
        link = HostedLink(link_id="L1")
        link.record_poll({"status": "PENDING"})
        link.abandon()
        assert link.state == LinkState.ABANDONED

    def test_abandon_after_finish_is_noop(self):
        link = HostedLink(link_id="L1")
        link.record_poll({"status": "FINISHED"})
        link.abandon()
        assert link.state == LinkState.FINISHED

    def test_abandoned_is_absorbing(self):
        link = HostedLink(link_id="L1")
        link.abandon()
        with pytest.raises(ValueError):
            link.transition(LinkState.POLLING)

    def test_cannot_skip_creation(self):
        link = HostedLink(link_id="L1", state=LinkState.NOT_STARTED)
        with pytest.raises(ValueError):
            link.transition(LinkState.FINISHED)
