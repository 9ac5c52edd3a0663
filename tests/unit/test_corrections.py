"""Unit tests for cup point corrections and conflict resolution.

CRITICAL TESTS:
- Large conflicting swings MUST be held for manual review, never applied
- A broken notification channel MUST NOT fail a correction
- Processing late submissions twice MUST penalise only once
"""

from datetime import timedelta

import pytest

from lastround.config.cup import CupConfig, LateSubmissionPenalty
from lastround.models.domain import POINTS_SOURCE_CORRECTION
from lastround.services.cup.corrections import (
    ConflictResolution,
    ConflictType,
    CorrectionOptions,
    CorrectionRequest,
    CorrectionType,
    CupCorrectionService,
    classify_conflict,
    is_recent_write,
    late_submission_corrections,
    resolve_conflict,
)
from lastround.services.cup.errors import ConflictError
from lastround.services.cup.late_submissions import LateSubmission
from lastround.services.cup.notifications import NotificationSeverity
from lastround.services.cup.repository import StoredCupPoints


def _correction(old, new, user_id="u-alice", round_id=5, **kwargs):
    return CorrectionRequest(
        user_id=user_id,
        betting_round_id=round_id,
        old_points=old,
        new_points=new,
        reason="Result re-graded",
        **kwargs,
    )


class TestConflictPolicy:
    """Pure conflict classification and resolution."""

    def test_recent_write_inside_window(self, now):
        assert is_recent_write(now - timedelta(seconds=299), now, 300)
        assert is_recent_write(now - timedelta(seconds=300), now, 300)

    def test_old_write_outside_window(self, now):
        assert not is_recent_write(now - timedelta(seconds=301), now, 300)

    def test_unknown_write_time_is_not_recent(self, now):
        assert not is_recent_write(None, now, 300)

    def test_naive_write_time_is_utc(self, now):
        naive = (now - timedelta(seconds=10)).replace(tzinfo=None)
        assert is_recent_write(naive, now, 300)

    def test_override_with_admin_is_override_conflict(self):
        correction = _correction(
            1, 2, correction_type=CorrectionType.MANUAL_OVERRIDE, admin_user_id="admin-1"
        )
        assert classify_conflict(correction) == ConflictType.MANUAL_OVERRIDE_CONFLICT

    def test_override_without_admin_is_concurrent_update(self):
        correction = _correction(1, 2, correction_type=CorrectionType.MANUAL_OVERRIDE)
        assert classify_conflict(correction) == ConflictType.CONCURRENT_UPDATE

    @pytest.mark.parametrize(
        "old,new,admin,expected",
        [
            (5, 16, None, ConflictResolution.MANUAL_REVIEW_REQUIRED),
            (16, 5, "admin-1", ConflictResolution.MANUAL_REVIEW_REQUIRED),
            (5, 15, "admin-1", ConflictResolution.ADMIN_OVERRIDE),
            (5, 15, None, ConflictResolution.LATEST_WINS),
            (5, 4, None, ConflictResolution.LATEST_WINS),
        ],
    )
    def test_resolution(self, old, new, admin, expected):
        assert resolve_conflict(_correction(old, new, admin_user_id=admin), 10) == expected

    def test_correction_type_coerced_from_string(self):
        correction = _correction(1, 2, correction_type="manual_override")
        assert correction.correction_type == CorrectionType.MANUAL_OVERRIDE


class TestCorrectionService:
    """Applying corrections against stored cup points."""

    @pytest.fixture(autouse=True)
    def _setup(self, active_repository, notifier, now):
        self.repo = active_repository
        self.repo.add_round(5)
        self.notifier = notifier
        self.now = now
        self.service = CupCorrectionService(
            self.repo, config=CupConfig(), notifier=notifier, clock=lambda: now
        )

    async def test_simple_correction_applied(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6, updated_at=self.now - timedelta(hours=2))

        result = await self.service.apply_corrections([_correction(6, 9)])

        assert result.success
        assert result.corrections_applied == 1
        assert result.points_changed == 3
        assert result.users_affected == 1
        assert result.conflicts == []
        assert self.repo.points("u-alice", 5) == 9
        assert self.notifier.notifications[0].severity == NotificationSeverity.INFO
        assert self.notifier.events == ["cup_correction_applied"]

    async def test_recent_mismatch_small_delta_latest_wins(self):
        self.repo.set_cup_points("u-alice", 5, 1, 7, updated_at=self.now - timedelta(seconds=60))

        result = await self.service.apply_corrections([_correction(6, 9)])

        assert result.success
        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.CONCURRENT_UPDATE
        assert conflict.resolution == ConflictResolution.LATEST_WINS
        assert conflict.existing_value == 7
        assert conflict.attempted_value == 9
        assert self.repo.points("u-alice", 5) == 9
        # measured against the value actually replaced
        assert result.points_changed == 2
        assert self.notifier.notifications[0].severity == NotificationSeverity.WARNING

    async def test_recent_mismatch_large_delta_held_for_review(self):
        self.repo.set_cup_points("u-alice", 5, 1, 7, updated_at=self.now - timedelta(seconds=60))

        result = await self.service.apply_corrections([_correction(6, 20)])

        assert result.success
        assert result.corrections_applied == 0
        assert result.pending_review[0].new_points == 20
        assert result.conflicts[0].resolution == ConflictResolution.MANUAL_REVIEW_REQUIRED
        assert self.repo.points("u-alice", 5) == 7
        assert self.notifier.events == ["cup_correction_needs_review"]
        assert self.notifier.notifications[0].severity == NotificationSeverity.ERROR

    async def test_old_mismatch_is_not_a_conflict(self):
        self.repo.set_cup_points("u-alice", 5, 1, 7, updated_at=self.now - timedelta(hours=1))

        result = await self.service.apply_corrections([_correction(6, 30)])

        assert result.conflicts == []
        assert self.repo.points("u-alice", 5) == 30

    def test_conflict_check_raises_with_values(self):
        stored = StoredCupPoints(
            user_id="u-alice",
            betting_round_id=5,
            season_id=1,
            points=7,
            last_updated=self.now - timedelta(seconds=30),
        )

        with pytest.raises(ConflictError) as exc_info:
            self.service._check_for_conflict(_correction(6, 9), stored)

        assert exc_info.value.existing_value == 7
        assert exc_info.value.attempted_value == 9

    def test_matching_stored_value_is_not_a_conflict(self):
        stored = StoredCupPoints(
            user_id="u-alice",
            betting_round_id=5,
            season_id=1,
            points=6,
            last_updated=self.now,
        )

        self.service._check_for_conflict(_correction(6, 9), stored)

    async def test_conflict_resolution_disabled(self):
        self.repo.set_cup_points("u-alice", 5, 1, 7, updated_at=self.now - timedelta(seconds=10))

        result = await self.service.apply_corrections(
            [_correction(6, 30)], CorrectionOptions(enable_conflict_resolution=False)
        )

        assert result.conflicts == []
        assert self.repo.points("u-alice", 5) == 30

    async def test_admin_override_conflict(self):
        self.repo.set_cup_points("u-alice", 5, 1, 7, updated_at=self.now - timedelta(seconds=10))

        result = await self.service.apply_corrections(
            [
                _correction(
                    6,
                    12,
                    correction_type=CorrectionType.MANUAL_OVERRIDE,
                    admin_user_id="admin-1",
                )
            ]
        )

        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.MANUAL_OVERRIDE_CONFLICT
        assert conflict.resolution == ConflictResolution.ADMIN_OVERRIDE
        assert self.repo.points("u-alice", 5) == 12

    async def test_override_without_admin_needs_approval(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6)

        result = await self.service.apply_corrections(
            [_correction(6, 8, correction_type=CorrectionType.MANUAL_OVERRIDE)],
            CorrectionOptions(require_admin_approval_for_overrides=True),
        )

        assert result.corrections_applied == 0
        assert len(result.pending_review) == 1
        assert self.repo.points("u-alice", 5) == 6
        assert self.notifier.events == ["cup_override_requires_admin"]

    async def test_missing_record_uses_round_season(self):
        result = await self.service.apply_corrections([_correction(0, 4, user_id="u-zoe")])

        assert result.success
        assert result.points_changed == 4
        assert self.repo.points("u-zoe", 5, season_id=1) == 4

    async def test_missing_round_is_reported(self):
        result = await self.service.apply_corrections([_correction(0, 4, round_id=77)])

        assert not result.success
        assert "Betting round 77 not found" in result.errors[0]
        assert self.notifier.events == ["cup_correction_failed"]

    async def test_negative_points_rejected(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6)

        result = await self.service.apply_corrections([_correction(6, -1)])

        assert not result.success
        assert "non-negative" in result.errors[0]
        assert self.repo.points("u-alice", 5) == 6

    async def test_one_failure_does_not_stop_the_rest(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6)
        self.repo.set_cup_points("u-bob", 5, 1, 2)

        result = await self.service.apply_corrections(
            [_correction(6, -3), _correction(2, 5, user_id="u-bob")]
        )

        assert not result.success
        assert result.corrections_applied == 1
        assert self.repo.points("u-bob", 5) == 5
        assert "Applied 1/2 corrections" in result.message

    async def test_notification_failure_is_swallowed(self, failing_notifier):
        self.repo.set_cup_points("u-alice", 5, 1, 6)
        service = CupCorrectionService(
            self.repo, config=CupConfig(), notifier=failing_notifier, clock=lambda: self.now
        )

        result = await service.apply_corrections([_correction(6, 9)])

        assert result.success
        assert result.corrections_applied == 1
        assert self.repo.points("u-alice", 5) == 9

    async def test_notifications_can_be_disabled(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6)

        await self.service.apply_corrections(
            [_correction(6, 9)], CorrectionOptions(notify_on_point_changes=False)
        )

        assert self.notifier.notifications == []

    async def test_manual_override_assumes_stored_value(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6, updated_at=self.now - timedelta(seconds=5))

        result = await self.service.apply_manual_override(
            "u-alice", 5, 2, "Disqualified fixture", admin_user_id="admin-1"
        )

        assert result.success
        assert result.conflicts == []
        assert result.points_changed == 4
        assert self.repo.points("u-alice", 5) == 2

    async def test_manual_override_with_stale_old_points(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6, updated_at=self.now - timedelta(seconds=5))

        result = await self.service.apply_manual_override(
            "u-alice", 5, 3, "Fix", admin_user_id="admin-1", old_points=4
        )

        assert result.conflicts[0].conflict_type == ConflictType.MANUAL_OVERRIDE_CONFLICT
        assert self.repo.points("u-alice", 5) == 3

    async def test_manual_override_read_failure_is_a_failed_result(self):
        self.repo.failing_reads.add("get_stored_cup_points")

        result = await self.service.apply_manual_override(
            "u-alice", 5, 3, "Fix", admin_user_id="admin-1"
        )

        assert not result.success
        assert "connection refused" in result.errors[0]
        assert self.repo.upsert_calls == []

    async def test_corrections_are_marked_as_such(self):
        self.repo.set_cup_points("u-alice", 5, 1, 6, updated_at=self.now - timedelta(hours=2))

        await self.service.apply_corrections([_correction(6, 9)])

        assert self.repo.source("u-alice", 5) == POINTS_SOURCE_CORRECTION

    async def test_result_serialises(self):
        self.repo.set_cup_points("u-alice", 5, 1, 7, updated_at=self.now - timedelta(seconds=60))

        result = await self.service.apply_corrections([_correction(6, 20)])
        data = result.to_dict()

        assert data["conflicts"][0]["resolution"] == "manual_review_required"
        assert data["pending_review"][0]["user_id"] == "u-alice"


def _bet(user_id, points, is_late=True, minutes_late=4, fixture_id=1):
    return LateSubmission(
        user_id=user_id,
        fixture_id=fixture_id,
        bet_timestamp=None,
        match_start_time=None,
        minutes_late=minutes_late if is_late else 0,
        is_late=is_late,
        points_awarded=points,
    )


def _stored(user_id, points):
    return StoredCupPoints(
        user_id=user_id, betting_round_id=5, season_id=1, points=points, last_updated=None
    )


class TestLateSubmissionCorrections:
    """Turning late bets into corrections."""

    def test_forfeit_keeps_on_time_points(self):
        corrections = late_submission_corrections(
            [_bet("u1", 2, is_late=False, fixture_id=1), _bet("u1", 3, fixture_id=2)],
            {"u1": _stored("u1", 5)},
            5,
            LateSubmissionPenalty.FORFEIT,
        )

        assert [(c.old_points, c.new_points) for c in corrections] == [(5, 2)]
        assert corrections[0].correction_type == CorrectionType.RESULT_UPDATE

    def test_already_penalised_total_needs_no_correction(self):
        corrections = late_submission_corrections(
            [_bet("u1", 2, is_late=False, fixture_id=1), _bet("u1", 3, fixture_id=2)],
            {"u1": _stored("u1", 2)},
            5,
            LateSubmissionPenalty.FORFEIT,
        )

        assert corrections == []

    def test_penalty_never_raises_stored_total(self):
        corrections = late_submission_corrections(
            [_bet("u1", 4, is_late=False, fixture_id=1), _bet("u1", 3, fixture_id=2)],
            {"u1": _stored("u1", 1)},
            5,
            LateSubmissionPenalty.FORFEIT,
        )

        assert corrections == []

    def test_only_late_bets_forfeit_everything(self):
        corrections = late_submission_corrections(
            [_bet("u1", 3)], {"u1": _stored("u1", 3)}, 5, LateSubmissionPenalty.FORFEIT
        )

        assert corrections[0].new_points == 0

    def test_zero_clears_round(self):
        corrections = late_submission_corrections(
            [_bet("u1", 4, is_late=False, fixture_id=1), _bet("u1", 1, fixture_id=2)],
            {"u1": _stored("u1", 5)},
            5,
            LateSubmissionPenalty.ZERO,
        )

        assert corrections[0].new_points == 0

    def test_several_late_bets_make_one_correction(self):
        corrections = late_submission_corrections(
            [
                _bet("u1", 3, is_late=False, fixture_id=1),
                _bet("u1", 1, minutes_late=3, fixture_id=2),
                _bet("u1", 2, minutes_late=9, fixture_id=3),
            ],
            {"u1": _stored("u1", 6)},
            5,
            LateSubmissionPenalty.FORFEIT,
        )

        assert len(corrections) == 1
        assert corrections[0].new_points == 3
        assert "2 bet(s)" in corrections[0].reason
        assert "up to 9 min late" in corrections[0].reason

    def test_users_without_late_bets_untouched(self):
        corrections = late_submission_corrections(
            [_bet("u1", 3, is_late=False), _bet("u2", 1)],
            {"u1": _stored("u1", 3), "u2": _stored("u2", 1)},
            5,
            LateSubmissionPenalty.FORFEIT,
        )

        assert [c.user_id for c in corrections] == ["u2"]

    def test_user_without_stored_points_skipped(self):
        corrections = late_submission_corrections(
            [_bet("u1", 3), _bet("u2", 1)],
            {"u2": _stored("u2", 4)},
            5,
            LateSubmissionPenalty.FORFEIT,
        )

        assert [c.user_id for c in corrections] == ["u2"]

    def test_zero_point_late_bet_changes_nothing(self):
        corrections = late_submission_corrections(
            [_bet("u1", 4, is_late=False, fixture_id=1), _bet("u1", 0, fixture_id=2)],
            {"u1": _stored("u1", 4)},
            5,
            LateSubmissionPenalty.FORFEIT,
        )

        assert corrections == []


class TestProcessLateSubmissions:
    """End-to-end late submission processing for a round."""

    @pytest.fixture(autouse=True)
    def _setup(self, active_repository, notifier, now):
        self.repo = active_repository
        self.repo.add_round(5)
        self.notifier = notifier
        self.now = now
        self.kickoff = now - timedelta(days=1)

    def _service(self, **config):
        return CupCorrectionService(
            self.repo, config=CupConfig(**config), notifier=self.notifier, clock=lambda: self.now
        )

    async def test_late_bet_points_forfeited(self):
        self.repo.set_cup_points("u-alice", 5, 1, 5, updated_at=self.now - timedelta(hours=3))
        self.repo.add_bet_timing(5, "u-alice", 1, self.kickoff, self.kickoff - timedelta(minutes=5), points=2)
        self.repo.add_bet_timing(5, "u-alice", 2, self.kickoff, self.kickoff + timedelta(minutes=5), points=3)

        result = await self._service().process_late_submissions(5)

        assert result.success
        assert result.corrections_applied == 1
        assert self.repo.points("u-alice", 5) == 2

    async def test_grace_period_applies(self):
        self.repo.set_cup_points("u-alice", 5, 1, 5)
        self.repo.add_bet_timing(5, "u-alice", 2, self.kickoff, self.kickoff + timedelta(minutes=5), points=3)

        result = await self._service(late_submission_grace_minutes=10).process_late_submissions(5)

        assert result.corrections_applied == 0
        assert result.message == "No late submissions in betting round 5"
        assert self.repo.points("u-alice", 5) == 5

    async def test_zero_penalty(self):
        self.repo.set_cup_points("u-alice", 5, 1, 5)
        self.repo.add_bet_timing(5, "u-alice", 2, self.kickoff, self.kickoff + timedelta(minutes=5), points=1)

        await self._service(late_submission_penalty="zero").process_late_submissions(5)

        assert self.repo.points("u-alice", 5) == 0

    async def test_disabled(self):
        self.repo.set_cup_points("u-alice", 5, 1, 5)
        self.repo.add_bet_timing(5, "u-alice", 2, self.kickoff, self.kickoff + timedelta(minutes=5), points=3)

        result = await self._service(process_late_submissions=False).process_late_submissions(5)

        assert result.success
        assert result.message == "Late submission processing is disabled"
        assert self.repo.points("u-alice", 5) == 5

    async def test_late_user_without_cup_points(self):
        self.repo.add_bet_timing(5, "u-bob", 2, self.kickoff, self.kickoff + timedelta(minutes=5), points=3)

        result = await self._service().process_late_submissions(5)

        assert result.success
        assert "no cup points to correct" in result.message
        assert self.repo.upsert_calls == []

    async def test_read_failure_reported(self):
        self.repo.failing_reads.add("get_round_bet_timings")

        result = await self._service().process_late_submissions(5)

        assert not result.success
        assert "connection refused" in result.errors[0]

    async def test_repeat_run_penalises_once(self):
        self.repo.set_cup_points("u-alice", 5, 1, 10, updated_at=self.now - timedelta(hours=3))
        self.repo.add_bet_timing(5, "u-alice", 1, self.kickoff, self.kickoff - timedelta(minutes=5), points=7)
        self.repo.add_bet_timing(5, "u-alice", 2, self.kickoff, self.kickoff + timedelta(minutes=5), points=3)
        service = self._service()

        first = await service.process_late_submissions(5)
        second = await service.process_late_submissions(5)

        assert first.corrections_applied == 1
        assert second.success
        assert second.corrections_applied == 0
        assert self.repo.points("u-alice", 5) == 7
        assert len(self.repo.upsert_calls) == 1
