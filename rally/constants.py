"""
rally.constants — Shared Constants
===================================

Single source of truth for action keys, post-type mapping and the default
reward policy catalogue.  Import from here instead of repeating string
literals in services and routes.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Action keys
# ---------------------------------------------------------------------------
COMMENT = "comment"
ROUTINE_POST = "routine_post"
ROUTINE_REVIEW = "routine_review"
GATHERING_REVIEW_TEXT = "gathering_review_text"
GATHERING_REVIEW_MEDIA = "gathering_review_media"
TMI_REVIEW = "tmi_review"
MISSION_CERT = "mission_cert"
CONSECUTIVE_DAYS_5 = "consecutive_days_5"
BROADCAST_REWARD = "additional_point"

# Post type (as sent by the content service) → action key.
# GATHERING_REVIEW is resolved at runtime: media → *_media, else *_text.
POST_TYPE_ACTIONS: dict[str, str] = {
    "ROUTINE_CERT": ROUTINE_POST,
    "ROUTINE_REVIEW": ROUTINE_REVIEW,
    "TMI_REVIEW": TMI_REVIEW,
    "TMI": TMI_REVIEW,
}
GATHERING_REVIEW = "GATHERING_REVIEW"

# Metadata keys searched (in order) for the context id of an action.
CONTEXT_KEYS: tuple[str, ...] = ("context_id", "comment_id", "post_id", "target_id")


# ---------------------------------------------------------------------------
# Default reward policies — seeded on first startup, editable afterwards.
# (amount, daily_cap, once_per_user, reason)
# ---------------------------------------------------------------------------
DEFAULT_POLICIES: dict[str, tuple[int, int | None, bool, str]] = {
    COMMENT: (1, 5, False, "Comment written"),
    ROUTINE_POST: (5, None, False, "Routine certification post"),
    ROUTINE_REVIEW: (10, None, False, "Routine review post"),
    GATHERING_REVIEW_TEXT: (5, None, False, "Gathering review (text)"),
    GATHERING_REVIEW_MEDIA: (10, None, False, "Gathering review (photo)"),
    TMI_REVIEW: (10, None, False, "TMI review post"),
    MISSION_CERT: (5, None, False, "Mission certification"),
    CONSECUTIVE_DAYS_5: (20, None, True, "Five consecutive days of activity"),
}

DEFAULT_REASON = "Reward"
BROADCAST_REASON = "Event reward"
EXPIRATION_REASON = "Reward expired"
REVOCATION_REASON = "Rewarded content deleted"

# Ledger entry sources
SOURCE_ACTION = "action"
SOURCE_BROADCAST = "broadcast"
SOURCE_ADMIN = "admin"
SOURCE_EXPIRATION = "expiration"
SOURCE_REVOCATION = "revocation"
