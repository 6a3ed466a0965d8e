"""
Lead funnel states and the allowed transitions between them
"""
from enum import Enum


class LeadState(str, Enum):
    """Funnel position of a conversation"""

    NEW = "NEW"  # נוצר, עוד לא נשלחה הודעת פתיחה
    DRIP = "DRIP"  # cold outreach - סדרת תבניות קבועה
    ACTIVE = "ACTIVE"  # שיחה דו-כיוונית
    PITCH_READY = "PITCH_READY"  # ניתוח חיצוני הכין הצעה
    READY_TO_SUBMIT = "READY_TO_SUBMIT"  # הליד אישר - נעילת סטטוס
    SUBMITTED = "SUBMITTED"
    OFFER_RECEIVED = "OFFER_RECEIVED"  # נעילת סטטוס
    DEAD = "DEAD"
    ARCHIVED = "ARCHIVED"


LEAD_TRANSITIONS: dict[LeadState, list[LeadState]] = {
    LeadState.NEW: [LeadState.DRIP, LeadState.ACTIVE, LeadState.DEAD, LeadState.ARCHIVED],
    LeadState.DRIP: [LeadState.ACTIVE, LeadState.DEAD, LeadState.ARCHIVED],
    LeadState.ACTIVE: [
        LeadState.PITCH_READY,
        LeadState.READY_TO_SUBMIT,
        LeadState.DEAD,
        LeadState.ARCHIVED,
    ],
    LeadState.PITCH_READY: [
        LeadState.ACTIVE,
        LeadState.READY_TO_SUBMIT,
        LeadState.DEAD,
        LeadState.ARCHIVED,
    ],
    LeadState.READY_TO_SUBMIT: [
        LeadState.SUBMITTED,
        LeadState.ACTIVE,
        LeadState.DEAD,
        LeadState.ARCHIVED,
    ],
    LeadState.SUBMITTED: [LeadState.OFFER_RECEIVED, LeadState.DEAD, LeadState.ARCHIVED],
    LeadState.OFFER_RECEIVED: [LeadState.READY_TO_SUBMIT, LeadState.DEAD, LeadState.ARCHIVED],
    LeadState.DEAD: [LeadState.ARCHIVED],
    LeadState.ARCHIVED: [],
}

# נעילת סטטוס - אף הודעה אוטונומית לא יוצאת במצבים האלה, רק פקודה ידנית
RESTRICTED_STATES: frozenset[LeadState] = frozenset({
    LeadState.READY_TO_SUBMIT,
    LeadState.OFFER_RECEIVED,
})

# מצבים שלולאת התגובה סורקת. המצבים המוגבלים נכללים כדי שההודעה תסומן
# כמעובדת ותירשם כחסומה במקום להיסרק שוב בכל tick.
REPLY_ELIGIBLE_STATES: frozenset[LeadState] = frozenset({
    LeadState.NEW,
    LeadState.DRIP,
    LeadState.ACTIVE,
    LeadState.PITCH_READY,
    LeadState.READY_TO_SUBMIT,
    LeadState.OFFER_RECEIVED,
})

# מצבים שהודעה נכנסת מקדמת אוטומטית ל-ACTIVE
PRE_ENGAGEMENT_STATES: frozenset[LeadState] = frozenset({LeadState.NEW, LeadState.DRIP})

# פקודה ידנית לא משנה מצב של ליד שנמצא באחד מאלה
PROTECTED_STATES: frozenset[LeadState] = frozenset({
    LeadState.DEAD,
    LeadState.SUBMITTED,
    LeadState.ARCHIVED,
})

TERMINAL_STATES: frozenset[LeadState] = frozenset({LeadState.DEAD, LeadState.ARCHIVED})


def is_valid_transition(current: str, target: str) -> bool:
    """Check if transition from current to target state is allowed"""
    try:
        current_state = LeadState(current)
        target_state = LeadState(target)
    except ValueError:
        return False
    return target_state in LEAD_TRANSITIONS.get(current_state, [])
