"""
Unit Tests for Prediction Rounds

Tests cover:
1. Validation runs before anything is written
2. Commit and payout entries of a full round
3. Settlement happens at most once
4. Cancellation hands commits back
5. Payout sync after settlement
6. Active commit volume
7. Listing and status transitions
"""

import threading
import warnings
import pytest
from pathlib import Path
from uuid import UUID

import club_ledger
from club_ledger.errors import (
    ClubNotFoundError,
    ConflictError,
    ForbiddenError,
    LedgerValidationError,
    RoundNotFoundError,
    StoreFailureError,
)
from club_ledger.models import (
    CANCEL_REVERSAL_SOURCE,
    CreateRoundRequest,
    EntryType,
    MemberPayoutInput,
    RoundCommitInput,
    RoundStatus,
    SettleRoundRequest,
)
from club_ledger.storage import (
    DEMO_ADMIN_ID,
    DEMO_ADMIN_SAFE,
    DEMO_CLUB_ID,
    DEMO_MEMBER_ID,
    DEMO_MEMBER_SAFE,
)

OTHER_CLUB_ID = UUID("44444444-4444-4444-4444-444444444444")
OUTSIDER_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
MISSING_ROUND_ID = UUID("99999999-9999-9999-9999-999999999999")


def cohort(n: int = 1) -> str:
    return "0x" + f"{n:064x}"


def round_request(commits=None, cohort_id: str = None) -> CreateRoundRequest:
    commits = commits if commits is not None else {DEMO_ADMIN_ID: "100", DEMO_MEMBER_ID: "200"}
    return CreateRoundRequest(
        cohort_id=cohort_id or cohort(),
        market_ref="will-it-rain",
        market_title="Will it rain tomorrow?",
        members=[RoundCommitInput(user_id=u, commit_amount=a) for u, a in commits.items()],
    )


def settle_request(payouts=None, outcome: str = "YES") -> SettleRoundRequest:
    payouts = payouts if payouts is not None else {DEMO_ADMIN_ID: "150", DEMO_MEMBER_ID: "100"}
    return SettleRoundRequest(
        payouts=[MemberPayoutInput(user_id=u, payout_amount=a) for u, a in payouts.items()],
        outcome=outcome,
    )


def assert_ledger_untouched(storage):
    assert storage.query_entries(club_id=DEMO_CLUB_ID) == []
    assert storage.list_rounds(DEMO_CLUB_ID)[1] == 0


class TestCreateRoundValidation:
    """Rejected requests leave no round and no entries behind."""

    def test_unknown_club(self, rounds, storage):
        """Test that a round for a missing club is refused."""
        with pytest.raises(ClubNotFoundError):
            rounds.create_round(OTHER_CLUB_ID, DEMO_ADMIN_ID, round_request())
        assert_ledger_untouched(storage)

    def test_non_admin_cannot_create(self, rounds, storage):
        """Test that plain members cannot open rounds."""
        with pytest.raises(ForbiddenError):
            rounds.create_round(DEMO_CLUB_ID, DEMO_MEMBER_ID, round_request())
        assert_ledger_untouched(storage)

    @pytest.mark.parametrize("cohort_id", ["0x1234", "ab" * 32, "0x" + "zz" * 32])
    def test_invalid_cohort(self, rounds, storage, cohort_id):
        """Test that the cohort id must be a bytes32 hex string."""
        with pytest.raises(LedgerValidationError):
            rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request(cohort_id=cohort_id))
        assert_ledger_untouched(storage)

    def test_empty_members(self, rounds, storage):
        """Test that a round needs at least one member."""
        with pytest.raises(LedgerValidationError):
            rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request(commits={}))
        assert_ledger_untouched(storage)

    @pytest.mark.parametrize("amount", ["0", "-100", "1.5", "abc"])
    def test_invalid_commit_amount(self, rounds, storage, amount):
        """Test that one bad commit amount rejects the whole round."""
        commits = {DEMO_ADMIN_ID: "100", DEMO_MEMBER_ID: amount}
        with pytest.raises(LedgerValidationError):
            rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request(commits=commits))
        assert_ledger_untouched(storage)

    def test_duplicate_member(self, rounds, storage):
        """Test that a member may appear once per round."""
        request = CreateRoundRequest(
            cohort_id=cohort(),
            members=[
                RoundCommitInput(user_id=DEMO_ADMIN_ID, commit_amount="100"),
                RoundCommitInput(user_id=DEMO_ADMIN_ID, commit_amount="50"),
            ],
        )
        with pytest.raises(LedgerValidationError):
            rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, request)
        assert_ledger_untouched(storage)

    def test_non_member_in_round(self, rounds, storage):
        """Test that every committing user must belong to the club."""
        commits = {DEMO_ADMIN_ID: "100", OUTSIDER_ID: "100"}
        with pytest.raises(LedgerValidationError):
            rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request(commits=commits))
        assert_ledger_untouched(storage)

    def test_cohort_is_unique(self, rounds, storage):
        """Test that a cohort id is used once, whatever its case."""
        rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request(cohort_id="0x" + "ab" * 32))

        with pytest.raises(ConflictError):
            rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request(cohort_id="0x" + "AB" * 32))

        assert storage.list_rounds(DEMO_CLUB_ID)[1] == 1
        assert len(storage.query_entries(club_id=DEMO_CLUB_ID)) == 2


class TestRoundLifecycle:
    """A full round: commit, settle, check the ledger."""

    def test_create_writes_one_commit_per_member(self, rounds, ledger):
        """Test that creating a round posts one COMMIT per member."""
        response = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request())

        assert response.round.status == RoundStatus.PENDING
        assert response.round.stake_total == 300
        assert response.round.cohort_id == cohort()
        assert {e.entry_type for e in response.ledger_entries} == {EntryType.COMMIT}
        assert sum(e.amount for e in response.ledger_entries) == -300

        by_user = {e.user_id: e for e in response.ledger_entries}
        assert by_user[DEMO_ADMIN_ID].safe_address == DEMO_ADMIN_SAFE
        assert by_user[DEMO_MEMBER_ID].safe_address == DEMO_MEMBER_SAFE
        assert all(e.round_id == response.round.id for e in response.ledger_entries)

    def test_settle_writes_payouts_and_balances_follow(self, rounds, ledger):
        """Test the commit then settle round trip on balances and pnl."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        response = rounds.settle_round(round_id, settle_request())

        assert response.round.status == RoundStatus.SETTLED
        assert response.round.outcome == "YES"
        assert response.round.settled_at is not None
        assert sum(e.amount for e in response.ledger_entries) == 250
        assert {e.entry_type for e in response.ledger_entries} == {EntryType.PAYOUT}

        pnl = {m.user_id: m.pnl_amount for m in response.members}
        assert pnl == {DEMO_ADMIN_ID: 50, DEMO_MEMBER_ID: -100}

        assert ledger.get_user_club_balance(DEMO_ADMIN_ID, DEMO_CLUB_ID) == 50
        assert ledger.get_user_club_balance(DEMO_MEMBER_ID, DEMO_CLUB_ID) == -100

    def test_losing_member_gets_no_payout_entry(self, rounds, storage):
        """Test that a zero payout writes no PAYOUT entry."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        response = rounds.settle_round(round_id, settle_request({DEMO_ADMIN_ID: "300", DEMO_MEMBER_ID: "0"}))

        payouts = storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT])
        assert [e.user_id for e in payouts] == [DEMO_ADMIN_ID]
        member = next(m for m in response.members if m.user_id == DEMO_MEMBER_ID)
        assert member.payout_amount == 0
        assert member.pnl_amount == -200

    def test_explicit_pnl_is_kept(self, rounds):
        """Test that a given pnl overrides the derived one."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        request = SettleRoundRequest(payouts=[
            MemberPayoutInput(user_id=DEMO_ADMIN_ID, payout_amount="150", pnl_amount="45"),
            MemberPayoutInput(user_id=DEMO_MEMBER_ID, payout_amount="100"),
        ])

        response = rounds.settle_round(round_id, request)

        pnl = {m.user_id: m.pnl_amount for m in response.members}
        assert pnl[DEMO_ADMIN_ID] == 45
        assert pnl[DEMO_MEMBER_ID] == -100

    def test_get_round_includes_members_and_entries(self, rounds):
        """Test that a round comes back with its members and entries."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.settle_round(round_id, settle_request())

        response = rounds.get_round(round_id)

        assert len(response.members) == 2
        assert len(response.ledger_entries) == 4

    def test_missing_round(self, rounds):
        """Test lookups and settlement of an unknown round."""
        with pytest.raises(RoundNotFoundError):
            rounds.get_round(MISSING_ROUND_ID)
        with pytest.raises(RoundNotFoundError):
            rounds.settle_round(MISSING_ROUND_ID, settle_request())


class TestSettlement:
    """Settlement validation and the at-most-once rule."""

    @pytest.mark.parametrize("payouts", [
        {DEMO_ADMIN_ID: "150"},
        {DEMO_ADMIN_ID: "150", DEMO_MEMBER_ID: "100", OUTSIDER_ID: "5"},
        {DEMO_ADMIN_ID: "150", DEMO_MEMBER_ID: "-1"},
        {DEMO_ADMIN_ID: "150", DEMO_MEMBER_ID: "1.5"},
    ])
    def test_invalid_payouts_write_nothing(self, rounds, storage, payouts):
        """Test that bad payout lists leave the round open and unpaid."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        with pytest.raises(LedgerValidationError):
            rounds.settle_round(round_id, settle_request(payouts))

        assert storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT]) == []
        assert storage.get_round(round_id).status == RoundStatus.PENDING

    def test_duplicate_payout(self, rounds):
        """Test that one member cannot be paid twice in a request."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        request = SettleRoundRequest(payouts=[
            MemberPayoutInput(user_id=DEMO_ADMIN_ID, payout_amount="150"),
            MemberPayoutInput(user_id=DEMO_ADMIN_ID, payout_amount="150"),
            MemberPayoutInput(user_id=DEMO_MEMBER_ID, payout_amount="100"),
        ])
        with pytest.raises(LedgerValidationError):
            rounds.settle_round(round_id, request)

    def test_second_settlement_is_a_conflict(self, rounds, storage):
        """Test that settling twice is refused."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.settle_round(round_id, settle_request())

        with pytest.raises(ConflictError):
            rounds.settle_round(round_id, settle_request())

        payouts = storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT])
        assert len(payouts) == 2

    def test_store_refuses_to_settle_twice(self, rounds, storage):
        """Test that the store itself refuses a second settlement."""
        response = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request())
        round_id = response.round.id
        rounds.settle_round(round_id, settle_request())

        with pytest.raises(ConflictError):
            storage.settle_round(round_id, response.members, [], response.round.created_at)

    def test_concurrent_settlements_apply_once(self, rounds, storage):
        """Test that racing settlements post exactly one set of payouts."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        barrier = threading.Barrier(4)
        results = []

        def settle():
            barrier.wait()
            try:
                rounds.settle_round(round_id, settle_request())
                results.append("settled")
            except (ConflictError, StoreFailureError):
                results.append("refused")

        threads = [threading.Thread(target=settle) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("settled") == 1
        assert results.count("refused") == 3
        payouts = storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT])
        assert len(payouts) == 2
        assert sum(e.amount for e in payouts) == 250


class TestCancellation:
    """Cancelling a round hands every commit back."""

    def test_cancel_reverses_commits(self, rounds, ledger, storage):
        """Test that cancelling posts one reversal per COMMIT and zeroes balances."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        response = rounds.cancel_round(round_id, "market delisted")

        assert response.round.status == RoundStatus.CANCELLED
        assert {e.entry_type for e in response.ledger_entries} == {EntryType.ADJUSTMENT}
        assert sum(e.amount for e in response.ledger_entries) == 300
        assert all(e.metadata["source"] == CANCEL_REVERSAL_SOURCE for e in response.ledger_entries)
        assert all(e.round_id == round_id for e in response.ledger_entries)
        assert storage.get_round(round_id).status == RoundStatus.CANCELLED
        assert ledger.get_user_club_balance(DEMO_ADMIN_ID, DEMO_CLUB_ID) == 0
        assert ledger.get_user_club_balance(DEMO_MEMBER_ID, DEMO_CLUB_ID) == 0

    def test_cancel_committed_round(self, rounds):
        """Test that a COMMITTED round can still be cancelled."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.mark_committed(round_id)

        assert rounds.cancel_round(round_id, "oracle dispute").round.status == RoundStatus.CANCELLED

    def test_second_cancel_writes_nothing(self, rounds, storage):
        """Test that cancelling twice leaves one set of reversals."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.cancel_round(round_id, "market delisted")

        again = rounds.cancel_round(round_id, "market delisted")

        assert again.round.status == RoundStatus.CANCELLED
        assert again.ledger_entries == []
        adjustments = storage.query_entries(round_id=round_id, entry_types=[EntryType.ADJUSTMENT])
        assert len(adjustments) == 2

    def test_store_refuses_to_cancel_twice(self, rounds, storage):
        """Test that the store itself refuses a second cancellation."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.cancel_round(round_id, "market delisted")

        with pytest.raises(ConflictError):
            storage.cancel_round(round_id, [])

    def test_settled_round_cannot_be_cancelled(self, rounds, storage):
        """Test that a settled round keeps its payouts."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.settle_round(round_id, settle_request())

        with pytest.raises(ConflictError):
            rounds.cancel_round(round_id, "too late")

        assert storage.query_entries(round_id=round_id, entry_types=[EntryType.ADJUSTMENT]) == []
        assert storage.get_round(round_id).status == RoundStatus.SETTLED

    def test_cancelled_round_cannot_be_settled(self, rounds, storage):
        """Test that settlement is refused after cancellation."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.cancel_round(round_id, "market delisted")

        with pytest.raises(ConflictError):
            rounds.settle_round(round_id, settle_request())

        assert storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT]) == []

    def test_cancel_missing_round(self, rounds):
        """Test cancelling an unknown round."""
        with pytest.raises(RoundNotFoundError):
            rounds.cancel_round(MISSING_ROUND_ID, "gone")


class TestPayoutSync:
    """Tests for correcting payouts on a settled round."""

    def test_sync_posts_missing_payout(self, rounds, storage):
        """Test that a corrected payout posts the missing PAYOUT and updates the member."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.settle_round(round_id, settle_request({DEMO_ADMIN_ID: "300", DEMO_MEMBER_ID: "0"}))

        response = rounds.sync_settled_payouts(round_id, settle_request({DEMO_ADMIN_ID: "300", DEMO_MEMBER_ID: "100"}))

        assert response.updated_members == 1
        assert response.created_payout_entries == 1
        assert [(e.user_id, e.amount) for e in response.ledger_entries] == [(DEMO_MEMBER_ID, 100)]

        member = next(m for m in storage.get_round_members(round_id) if m.user_id == DEMO_MEMBER_ID)
        assert member.payout_amount == 100
        assert member.pnl_amount == -100
        payouts = storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT])
        assert sorted(e.amount for e in payouts) == [100, 300]

    def test_second_sync_is_a_no_op(self, rounds, storage):
        """Test that syncing the same payouts again writes nothing."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id
        rounds.settle_round(round_id, settle_request({DEMO_ADMIN_ID: "300", DEMO_MEMBER_ID: "0"}))
        corrected = settle_request({DEMO_ADMIN_ID: "300", DEMO_MEMBER_ID: "100"})
        rounds.sync_settled_payouts(round_id, corrected)

        again = rounds.sync_settled_payouts(round_id, corrected)

        assert again.updated_members == 0
        assert again.created_payout_entries == 0
        assert len(storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT])) == 2

    def test_sync_needs_a_settled_round(self, rounds, storage):
        """Test that an open round cannot be synced."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        with pytest.raises(ConflictError):
            rounds.sync_settled_payouts(round_id, settle_request())

        assert storage.query_entries(round_id=round_id, entry_types=[EntryType.PAYOUT]) == []


class TestActiveVolume:
    """Tests for active commit volume."""

    def test_volume_counts_open_rounds_only(self, rounds, ledger):
        """Test that settled rounds drop out of the volume."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        assert ledger.get_clubs_active_commit_volume([DEMO_CLUB_ID]) == {DEMO_CLUB_ID: 300}

        rounds.settle_round(round_id, settle_request())

        assert ledger.get_clubs_active_commit_volume([DEMO_CLUB_ID]) == {DEMO_CLUB_ID: 0}

    def test_cancelled_round_is_not_active(self, rounds, ledger, storage):
        """Test that cancelled rounds drop out of the volume."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        rounds.cancel_round(round_id, "market delisted")

        assert storage.open_round_ids([DEMO_CLUB_ID]) == set()
        assert ledger.get_clubs_active_commit_volume([DEMO_CLUB_ID]) == {DEMO_CLUB_ID: 0}

    def test_every_requested_club_is_reported(self, rounds, ledger):
        """Test that clubs without rounds report zero."""
        rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request())

        volume = ledger.get_clubs_active_commit_volume([DEMO_CLUB_ID, OTHER_CLUB_ID])

        assert volume == {DEMO_CLUB_ID: 300, OTHER_CLUB_ID: 0}


class TestRoundStatusAndListing:
    """Tests for status transitions and pagination."""

    def test_mark_committed_then_settle(self, rounds):
        """Test PENDING to COMMITTED to SETTLED."""
        round_id = rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request()).round.id

        assert rounds.mark_committed(round_id).status == RoundStatus.COMMITTED
        with pytest.raises(ConflictError):
            rounds.mark_committed(round_id)

        assert rounds.settle_round(round_id, settle_request()).round.status == RoundStatus.SETTLED

    def test_list_rounds_paginates_and_filters(self, rounds):
        """Test paging and the status filter."""
        ids = [
            rounds.create_round(DEMO_CLUB_ID, DEMO_ADMIN_ID, round_request(cohort_id=cohort(n))).round.id
            for n in range(1, 4)
        ]
        rounds.settle_round(ids[0], settle_request())
        rounds.cancel_round(ids[1], "market delisted")

        first = rounds.list_rounds(DEMO_CLUB_ID, page=1, page_size=2)
        assert first.total == 3
        assert len(first.items) == 2
        assert first.has_more is True

        second = rounds.list_rounds(DEMO_CLUB_ID, page=2, page_size=2)
        assert len(second.items) == 1
        assert second.has_more is False

        settled = rounds.list_rounds(DEMO_CLUB_ID, status="SETTLED")
        assert [r.id for r in settled.items] == [ids[0]]
        cancelled = rounds.list_rounds(DEMO_CLUB_ID, status="CANCELLED")
        assert [r.id for r in cancelled.items] == [ids[1]]

    def test_list_rounds_rejects_unknown_status(self, rounds):
        """Test that an unknown status filter is refused."""
        with pytest.raises(LedgerValidationError):
            rounds.list_rounds(DEMO_CLUB_ID, status="OPEN")


class TestModuleSource:
    """Tests for the package source itself."""

    def test_modules_compile_without_warnings(self):
        """Test that no module has invalid escapes or other compile-time warnings."""
        package_dir = Path(club_ledger.__file__).parent
        for path in sorted(package_dir.rglob("*.py")):
            with warnings.catch_warnings():
                warnings.simplefilter("error")
                compile(path.read_text(encoding="utf-8"), str(path), "exec")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
