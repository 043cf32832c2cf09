"""
Configuration package for callbridge.

Key components:
- constants: protocol event names, conversational defaults and tunables shared
  by the session engine (interruption threshold, provisioning TTL, reply timeout).
- settings: environment-driven settings, loaded once from the process
  environment and an optional ``.env`` file.
- logging_config: the shared ``callbridge`` logger with console and rotating
  file output.

Usage examples:
```python
from callbridge.config.constants import LOGGER_NAME, MIN_INTERRUPTION_CHARS
from callbridge.config.settings import settings
from callbridge.config.logging_config import configure_logging

logger = configure_logging()
logger.info(f"Voice backend: {settings.voice_backend}")
```
"""
