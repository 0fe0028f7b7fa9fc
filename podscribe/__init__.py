"""
Podscribe backend package.

Design intent:
- Turn uploaded episode audio into speaker-attributed WhisperX transcripts.
- Keep domain modules (asr/jobs) independent from the HTTP surface.
"""

__version__ = "0.1.0"
