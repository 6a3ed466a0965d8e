"""
Lead funnel state machine
"""
from app.state_machine.states import LeadState, LEAD_TRANSITIONS, RESTRICTED_STATES
from app.state_machine.manager import StateManager

__all__ = ["LeadState", "LEAD_TRANSITIONS", "RESTRICTED_STATES", "StateManager"]
