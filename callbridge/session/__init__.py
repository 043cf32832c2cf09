"""
Session module: the per-call engine.

Key components:
- playback: PlaybackSequencer, ordering synthesized audio by response index
  and tracking the marks sent with it.
- interruption: InterruptionDetector, the barge-in heuristic that clears
  outstanding playback.
- manager: CallSessionManager, the state machine owning one call from
  stream-open to termination.
"""

# Session module initialization
