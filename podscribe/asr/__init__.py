"""
ASR module boundary for Podscribe.

Design intent:
- Hold the typed token/segment contracts shared by the pipeline.
- Keep word-to-speaker fusion pure and free of model dependencies.
- Own the fallback diarization decision next to the data it inspects.
"""
