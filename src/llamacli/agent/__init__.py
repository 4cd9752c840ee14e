"""
agent/ — llamacli Agent Core

Public API:
    from llamacli.agent import Orchestrator, TurnResult, TurnStatus

Component overview:
    StreamEventParser   Raw model text → content / thinking events
    ContextBuilder      System prompt + eligible session history
    Orchestrator        Turn loop: stream → tools → feed back → repeat
"""

from llamacli.agent.context_builder import ContextBuilder
from llamacli.agent.events import CollectingSink, NullSink, TurnResult, TurnStatus, UISink
from llamacli.agent.orchestrator import Orchestrator
from llamacli.agent.stream_parser import StreamEvent, StreamEventKind, StreamEventParser, iter_stream_events

__all__ = [
    "CollectingSink",
    "ContextBuilder",
    "NullSink",
    "Orchestrator",
    "StreamEvent",
    "StreamEventKind",
    "StreamEventParser",
    "TurnResult",
    "TurnStatus",
    "UISink",
    "iter_stream_events",
]
