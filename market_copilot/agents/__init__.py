"""Run session, chat controller and the state machines they drive."""

from market_copilot.agents.chat_controller import ChatState, ChatTurnController
from market_copilot.agents.escalation import EscalationGate, GateState
from market_copilot.agents.guided import GuidedSubflow, SubflowState
from market_copilot.agents.progress import ProgressEstimator
from market_copilot.agents.run_session import ActiveToken, RunSession
from market_copilot.agents.stream_decoder import EventStreamDecoder, StreamDecoder

__all__ = [
    "ActiveToken",
    "ChatState",
    "ChatTurnController",
    "EscalationGate",
    "EventStreamDecoder",
    "GateState",
    "GuidedSubflow",
    "ProgressEstimator",
    "RunSession",
    "StreamDecoder",
    "SubflowState",
]
