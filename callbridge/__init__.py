"""
callbridge: real-time call orchestration between Twilio media streams and a
conversational voice backend.
"""

__version__ = "1.0.0"
