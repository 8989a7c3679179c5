"""Tests for the atomic claim protocol (remotebox.core.claim)."""

import asyncio
import json

import pytest

from conftest import FakeChannel, marker_path, state_path
from remotebox.core.claim import MAX_CREATE_ATTEMPTS, claim_ownership, force_claim, release_ownership
from remotebox.core.ownership import mirror_session
from remotebox.core.session import build_lease
from remotebox.core.shell import escape_remote_path
from remotebox.identity import Identity
from remotebox.models import ClaimCode

HOST = "devbox"
PROJECT = "~/code/app"
STATE = state_path(PROJECT)
MARKER = marker_path(PROJECT)

BOB_RECORD = {"owner": "bob", "machine": "desktop", "created": "2024-06-02T08:30:00.000Z"}


def owner_of(channel: FakeChannel) -> dict:
    return json.loads(channel.files[STATE])["ownership"]


class TestClaimOwnership:
    """First claim, refresh and refusal."""

    @pytest.mark.asyncio
    async def test_acquire_unowned(self, channel, alice):
        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.success
        assert result.code == ClaimCode.ACQUIRED
        assert result.record.owner == "alice"
        assert owner_of(channel)["machine"] == "laptop"
        assert channel.commands[0].startswith("set -C && ")
        assert channel.commands[0].endswith("/.remotebox/owner.lock'")
        assert len([c for c in channel.commands if c.startswith("set -C")]) == 1

    @pytest.mark.asyncio
    async def test_refresh_is_idempotent(self, channel, alice):
        first = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)
        second = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)
        third = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert first.code == ClaimCode.ACQUIRED
        assert second.success and second.code == ClaimCode.REFRESHED
        assert third.success and third.code == ClaimCode.REFRESHED
        assert owner_of(channel)["owner"] == "alice"

    @pytest.mark.asyncio
    async def test_refresh_keeps_session_section(self, channel, alice):
        own = {"owner": "alice", "machine": "laptop", "created": "2024-01-01T00:00:00.000Z"}
        channel.files[STATE] = json.dumps({"ownership": own, "session": {"machine": "laptop"}})

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.code == ClaimCode.REFRESHED
        doc = json.loads(channel.files[STATE])
        assert doc["session"] == {"machine": "laptop"}
        assert doc["ownership"]["created"] != own["created"]

    @pytest.mark.asyncio
    async def test_owned_by_other(self, channel, alice):
        channel.files[STATE] = json.dumps({"ownership": BOB_RECORD})

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert not result.success
        assert result.code == ClaimCode.OWNED_BY_OTHER
        assert "bob" in result.error and "desktop" in result.error
        assert result.existing.owner == "bob"
        assert owner_of(channel) == BOB_RECORD

    @pytest.mark.asyncio
    async def test_same_user_other_machine_is_other(self, channel):
        channel.files[STATE] = json.dumps({"ownership": BOB_RECORD})
        bob_elsewhere = Identity(machine="laptop", user="bob")

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=bob_elsewhere)

        assert result.code == ClaimCode.OWNED_BY_OTHER

    @pytest.mark.asyncio
    async def test_transport_error_on_create(self, channel, alice):
        channel.fail_on("set -C", "Remote command timed out after 30s")
        channel.fail_on("cat", "Remote command timed out after 30s")

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert not result.success
        assert result.code == ClaimCode.TRANSPORT_ERROR
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_invalid_path(self, channel, alice):
        result = await claim_ownership(HOST, "~/code/../etc", channel=channel, identity=alice)
        assert result.code == ClaimCode.INVALID_PATH
        assert channel.commands == []


class TestRetry:
    """A claim marker without a valid owner gets exactly one retry."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [
        "{half-written",
        json.dumps({"owner": "bob"}),
    ])
    async def test_persistent_ownerless_marker(self, channel, alice, content):
        channel.files[MARKER] = content

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert not result.success
        assert result.code == ClaimCode.CONCURRENT_ACCESS
        assert "concurrent access detected" in result.error
        creates = [c for c in channel.commands if c.startswith("set -C")]
        assert len(creates) == MAX_CREATE_ATTEMPTS == 2
        assert channel.files[MARKER] == content
        assert STATE not in channel.files

    @pytest.mark.asyncio
    async def test_marker_vanishes_before_retry(self, channel, alice):
        """Create fails, the blocking marker is removed, the retry wins."""
        channel.files[MARKER] = "{half-written"

        def remove_after_read(fake, command):
            if command.startswith("[ ! -e") and escape_remote_path(MARKER) in command:
                fake.files.pop(MARKER, None)

        channel.before_run = remove_after_read

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.success
        assert result.code == ClaimCode.ACQUIRED
        assert owner_of(channel)["owner"] == "alice"


class TestClaimMarker:
    """The noclobber create targets owner.lock, never the state document."""

    @pytest.mark.asyncio
    async def test_session_only_document_is_claimed(self, channel, alice, bob):
        lease = build_lease(bob)
        await mirror_session(HOST, PROJECT, lease, channel=channel)

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.code == ClaimCode.ACQUIRED
        doc = json.loads(channel.files[STATE])
        assert doc["ownership"]["owner"] == "alice"
        assert doc["session"] == lease.model_dump()

    @pytest.mark.asyncio
    async def test_session_only_document_is_claimed_once(self, channel, alice, bob):
        await mirror_session(HOST, PROJECT, build_lease(bob), channel=channel)

        results = await asyncio.gather(
            claim_ownership(HOST, PROJECT, channel=channel, identity=alice),
            claim_ownership(HOST, PROJECT, channel=channel, identity=bob),
        )

        codes = sorted(r.code.value for r in results)
        assert codes == [ClaimCode.ACQUIRED.value, ClaimCode.OWNED_BY_OTHER.value]
        winner = next(r for r in results if r.success)
        assert owner_of(channel)["owner"] == winner.record.owner
        assert "session" in json.loads(channel.files[STATE])

    @pytest.mark.asyncio
    async def test_marker_holds_winning_record(self, channel, alice):
        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)
        assert json.loads(channel.files[MARKER]) == result.record.model_dump()

    @pytest.mark.asyncio
    async def test_unmerged_claim_names_claimant(self, channel, alice):
        channel.files[MARKER] = json.dumps(BOB_RECORD)

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.code == ClaimCode.OWNED_BY_OTHER
        assert result.existing.owner == "bob"
        assert STATE not in channel.files

    @pytest.mark.asyncio
    async def test_own_unmerged_claim_is_completed(self, channel, alice):
        own = {"owner": "alice", "machine": "laptop", "created": "2024-01-01T00:00:00.000Z"}
        channel.files[MARKER] = json.dumps(own)

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.code == ClaimCode.REFRESHED
        assert owner_of(channel)["owner"] == "alice"
        assert json.loads(channel.files[MARKER]) == owner_of(channel)

    @pytest.mark.asyncio
    async def test_document_owner_without_marker_is_kept(self, channel, alice):
        channel.files[STATE] = json.dumps({"ownership": BOB_RECORD})

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.code == ClaimCode.OWNED_BY_OTHER
        assert owner_of(channel) == BOB_RECORD
        assert json.loads(channel.files[MARKER]) == BOB_RECORD

    @pytest.mark.asyncio
    async def test_failed_merge_removes_marker(self, channel, alice):
        channel.fail_on("mv -f", "mv: cannot move: No space left on device")

        result = await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        assert result.code == ClaimCode.TRANSPORT_ERROR
        assert "No space left" in result.error
        assert MARKER not in channel.files
        assert STATE not in channel.files


class TestRace:
    """Simultaneous first claims: exactly one winner."""

    @pytest.mark.asyncio
    async def test_two_claimants(self, channel, alice, bob):
        results = await asyncio.gather(
            claim_ownership(HOST, PROJECT, channel=channel, identity=alice),
            claim_ownership(HOST, PROJECT, channel=channel, identity=bob),
        )

        winners = [r for r in results if r.success]
        losers = [r for r in results if not r.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].code == ClaimCode.OWNED_BY_OTHER
        assert losers[0].existing.owner == winners[0].record.owner
        assert owner_of(channel)["owner"] == winners[0].record.owner

    @pytest.mark.asyncio
    async def test_many_claimants(self, channel):
        claimants = [Identity(machine=f"host{i}", user=f"user{i}") for i in range(8)]

        results = await asyncio.gather(*(
            claim_ownership(HOST, PROJECT, channel=channel, identity=who) for who in claimants
        ))

        acquired = [r for r in results if r.code == ClaimCode.ACQUIRED]
        assert len(acquired) == 1
        assert all(r.code == ClaimCode.OWNED_BY_OTHER for r in results if r is not acquired[0])
        assert owner_of(channel)["owner"] == acquired[0].record.owner


class TestForceClaim:

    @pytest.mark.asyncio
    async def test_takes_over(self, channel, alice):
        channel.files[STATE] = json.dumps({"ownership": BOB_RECORD, "session": {"machine": "desktop"}})

        result = await force_claim(HOST, PROJECT, channel=channel, identity=alice)

        assert result.success
        assert result.code == ClaimCode.FORCED
        assert result.existing.owner == "bob"
        doc = json.loads(channel.files[STATE])
        assert doc["ownership"]["owner"] == "alice"
        assert doc["session"] == {"machine": "desktop"}

    @pytest.mark.asyncio
    async def test_fixes_ownerless_document(self, channel, alice):
        channel.files[STATE] = json.dumps({"session": {"machine": "laptop"}})

        result = await force_claim(HOST, PROJECT, channel=channel, identity=alice)

        assert result.success
        assert result.existing is None
        assert owner_of(channel)["owner"] == "alice"

    @pytest.mark.asyncio
    async def test_transport_failure(self, channel, alice):
        channel.fail_on("cat")
        result = await force_claim(HOST, PROJECT, channel=channel, identity=alice)
        assert result.code == ClaimCode.TRANSPORT_ERROR


class TestRelease:

    @pytest.mark.asyncio
    async def test_release_then_other_can_claim(self, channel, alice, bob):
        await claim_ownership(HOST, PROJECT, channel=channel, identity=alice)

        released = await release_ownership(HOST, PROJECT, channel=channel, identity=alice)
        claimed = await claim_ownership(HOST, PROJECT, channel=channel, identity=bob)

        assert released.success and not released.skipped
        assert claimed.code == ClaimCode.ACQUIRED
        assert owner_of(channel)["owner"] == "bob"

    @pytest.mark.asyncio
    async def test_cannot_release_someone_elses(self, channel, alice):
        channel.files[STATE] = json.dumps({"ownership": BOB_RECORD})
        result = await release_ownership(HOST, PROJECT, channel=channel, identity=alice)
        assert result.skipped
        assert owner_of(channel) == BOB_RECORD
