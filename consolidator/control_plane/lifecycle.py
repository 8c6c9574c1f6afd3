"""
consolidator/control_plane/lifecycle.py
───────────────────────────────────────
Transition functions for MigrationRecommendation.state.

State machine
──────────────
  From              To                         Function
  ────              ──                         ────────
  Recommended       PendingApproval            submit_for_approval()
  Recommended       Scheduled                  schedule()
  Recommended       Executed                   execute()
  Scheduled         Executed                   execute()
  PendingApproval   Executed (token matches)   approve()
  PendingApproval   Rejected                   reject(), expire()
  Scheduled         Rejected                   reject()

  Executed and Rejected are terminal. Nothing reopens them.

Every function returns a NEW recommendation (pydantic model_copy) and
leaves its argument untouched. An illegal move raises
InvalidTransitionError; the caller's record is still intact afterwards.

Approval tokens are single-use by construction: a successful approve()
moves the record out of PendingApproval, so a second approve() with the
same token hits InvalidTransitionError.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple, Type

from consolidator.shared.models import (
    Executed,
    MigrationRecommendation,
    PendingApproval,
    Recommended,
    Rejected,
    SafeWindow,
    Scheduled,
)


class InvalidTransitionError(Exception):
    """
    Raised when a transition is not allowed from the record's current state.

    Attributes:
        recommendation_id: Id of the recommendation.
        current:           State kind the record is in.
        requested:         State kind the caller asked for.
    """

    def __init__(self, recommendation_id: str, current: str, requested: str) -> None:
        self.recommendation_id = recommendation_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Recommendation {recommendation_id}: cannot move from {current} to {requested}"
        )


class ApprovalTokenError(Exception):
    """Raised when approve() is called with a token that does not match."""

    def __init__(self, recommendation_id: str) -> None:
        self.recommendation_id = recommendation_id
        super().__init__(f"Recommendation {recommendation_id}: approval token does not match")


class ApprovalExpiredError(Exception):
    """Raised when approve() is called after the pending entry expired."""

    def __init__(self, recommendation_id: str, expires_at: datetime) -> None:
        self.recommendation_id = recommendation_id
        self.expires_at = expires_at
        super().__init__(
            f"Recommendation {recommendation_id}: approval expired at {expires_at.isoformat()}"
        )


def _require(
    rec: MigrationRecommendation,
    allowed: Tuple[Type, ...],
    requested: str,
) -> None:
    if not isinstance(rec.state, allowed):
        raise InvalidTransitionError(rec.id, rec.state.kind, requested)


def _with_state(rec: MigrationRecommendation, state) -> MigrationRecommendation:
    return rec.model_copy(update={"state": state}, deep=True)


def approve_command(recommendation_id: str) -> str:
    return f"kubectl optimize approve {recommendation_id}"


def reject_command(recommendation_id: str) -> str:
    return f"kubectl optimize reject {recommendation_id}"


def submit_for_approval(
    rec: MigrationRecommendation,
    token: str,
    expires_at: datetime,
    reason: Optional[str] = None,
) -> MigrationRecommendation:
    _require(rec, (Recommended,), "pending-approval")
    return _with_state(
        rec,
        PendingApproval(
            approval_token=token,
            expires_at=expires_at,
            reason=reason,
            approve_command=approve_command(rec.id),
            reject_command=reject_command(rec.id),
        ),
    )


def schedule(
    rec: MigrationRecommendation,
    window: SafeWindow,
    reason: str = "Waiting for low-traffic window",
) -> MigrationRecommendation:
    _require(rec, (Recommended,), "scheduled")
    return _with_state(
        rec,
        Scheduled(scheduled_for=window.start, window_end=window.end, reason=reason),
    )


def execute(
    rec: MigrationRecommendation,
    at: datetime,
    trigger: str,
) -> MigrationRecommendation:
    _require(rec, (Recommended, Scheduled), "executed")
    return _with_state(rec, Executed(executed_at=at, trigger=trigger))


def approve(
    rec: MigrationRecommendation,
    token: str,
    at: datetime,
    enforce_expiry: bool = True,
) -> MigrationRecommendation:
    """
    PendingApproval → Executed, if ``token`` matches.

    With enforce_expiry (the default) an entry whose expires_at is not
    after ``at`` is refused with ApprovalExpiredError.
    """
    _require(rec, (PendingApproval,), "executed")
    pending = rec.state
    if token != pending.approval_token:
        raise ApprovalTokenError(rec.id)
    if enforce_expiry and pending.is_expired(at):
        raise ApprovalExpiredError(rec.id, pending.expires_at)
    return _with_state(rec, Executed(executed_at=at, trigger="approval"))


def reject(
    rec: MigrationRecommendation,
    at: datetime,
    reason: str = "Rejected by operator",
) -> MigrationRecommendation:
    _require(rec, (PendingApproval, Scheduled), "rejected")
    return _with_state(rec, Rejected(rejected_at=at, reason=reason))


def expire(rec: MigrationRecommendation, now: datetime) -> MigrationRecommendation:
    """Reject a pending entry whose approval window has passed; otherwise return it as is."""
    if isinstance(rec.state, PendingApproval) and rec.state.is_expired(now):
        return reject(rec, now, reason="Approval expired")
    return rec
