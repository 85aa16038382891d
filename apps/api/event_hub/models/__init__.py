from event_hub.models.agent_event import AgentEvent, Base

__all__ = ["Base", "AgentEvent"]
