"""
Models module for data structures and state management in callbridge.

Key components:
- message_schemas: Pydantic models for the Twilio media stream protocol, the
  managed conversational agent protocol and the HTTP provisioning surface.
  Each inbound family is a closed tagged union, parsed once at the edge.
- call_session: The per-call state (CallSession), its lifecycle states and
  the immutable per-call configuration (CallConfig, Capability).
- registry: The process-wide SessionRegistry that maps call ids to provisioned
  configuration and active session managers, with TTL eviction.

Usage examples:
```python
from callbridge.models.call_session import CallConfig
from callbridge.models.registry import SessionRegistry
from callbridge.models.message_schemas import parse_stream_event, StartEvent

registry = SessionRegistry()
registry.provision("CA123", CallConfig(prompt="Be brief.", first_message="Hi!"))

event = parse_stream_event(raw_text)
if isinstance(event, StartEvent):
    config = registry.config_for(event.start.callSid)
```
"""

from callbridge.models.call_session import (
    AdaptationEvent,
    CallConfig,
    CallSession,
    CallState,
    Capability,
    TranscriptEntry,
)
from callbridge.models.registry import RegistryEntry, SessionRegistry
