"""
Handlers module for the Twilio media stream WebSocket.

Key components:
- stream_handlers: one coroutine per media stream event (connected, start,
  media, mark, stop, dtmf), each translating the event into an operation on
  the connection's CallSessionManager.

Usage examples:
```python
from callbridge.handlers.stream_handlers import handle_start, handle_media
from callbridge.models.message_schemas import parse_stream_event

event = parse_stream_event(raw_text)
if event.event == "start":
    await handle_start(event, session_manager)
```
"""

# Handlers module initialization
